"""
Sandbox Executor tests.

Path and command violations are checked without spawning anything. The
execution tests run real ``python3`` child processes in temp workspaces.
"""

import os
import shutil
import tempfile

import pytest

from advisory.core.exceptions import SandboxViolation
from advisory.services.sandbox_executor import (
    TIMEOUT_EXIT_CODE,
    TOOL_ALLOWLIST,
    SandboxExecutor,
    parse_command,
    validate_relative_path,
)

needs_python3 = pytest.mark.skipif(shutil.which("python3") is None, reason="python3 not on PATH")


def _workspaces(prefix):
    root = tempfile.gettempdir()
    return {name for name in os.listdir(root) if name.startswith(prefix)}


# ═════════════════════════════════════════════════════════════════════════════
# Validation
# ═════════════════════════════════════════════════════════════════════════════


class TestPathValidation:
    @pytest.mark.parametrize("path", [
        "index.js",
        "src/lib/util.py",
        "tests/test_app.py",
        "a..b/file.txt",
        "./src/app.py",
    ])
    def test_allowed(self, path):
        assert validate_relative_path(path) is True

    @pytest.mark.parametrize("path", [
        "",
        "   ",
        None,
        "/etc/passwd",
        "\\windows\\system32",
        "~/.ssh/id_rsa",
        "../escape.txt",
        "src/../../escape.txt",
        "src\\..\\escape.txt",
        "C:evil.txt",
        "src/",
        "src\\",
        ".",
        "./",
    ])
    def test_rejected(self, path):
        assert validate_relative_path(path) is False


class TestCommandValidation:
    @pytest.mark.parametrize("command", ["npm test", "pytest -q", "python3 run.py", "node index.js"])
    def test_allowed(self, command):
        assert parse_command(command)[0] == command.split()[0]

    @pytest.mark.parametrize("command", ["", "rm -rf /", "bash -c 'echo hi'", "curl http://x", "sh test.sh"])
    def test_rejected(self, command):
        with pytest.raises(SandboxViolation):
            parse_command(command)


class TestViolationsWriteNothing:
    def test_bad_path_creates_no_workspace(self, real_sandbox):
        before = _workspaces(real_sandbox.prefix)
        with pytest.raises(SandboxViolation) as exc:
            real_sandbox.execute_plan({
                "files": [{"path": "ok.py", "content": ""}, {"path": "../evil.py", "content": ""}],
                "testCommand": "python3 ok.py",
            })
        assert exc.value.details == {"path": "../evil.py"}
        assert _workspaces(real_sandbox.prefix) == before

    def test_bad_command_creates_no_workspace(self, real_sandbox):
        before = _workspaces(real_sandbox.prefix)
        with pytest.raises(SandboxViolation):
            real_sandbox.execute_plan({
                "files": [{"path": "ok.sh", "content": "echo hi"}],
                "testCommand": "bash ok.sh",
            })
        assert _workspaces(real_sandbox.prefix) == before

    @pytest.mark.parametrize("paths, culprit", [
        (["a", "a/b.py"], "a"),
        (["src/lib/util.py", "src/lib"], "src/lib"),
        (["pkg\\mod.py", "pkg"], "pkg"),
    ])
    def test_file_directory_collision_creates_no_workspace(self, real_sandbox, paths, culprit):
        before = _workspaces(real_sandbox.prefix)
        with pytest.raises(SandboxViolation) as exc:
            real_sandbox.execute_plan({
                "files": [{"path": p, "content": "x = 1\n"} for p in paths],
                "testCommand": "python3 -c pass",
            })
        assert exc.value.details == {"path": culprit}
        assert _workspaces(real_sandbox.prefix) == before

    def test_directory_path_creates_no_workspace(self, real_sandbox):
        before = _workspaces(real_sandbox.prefix)
        with pytest.raises(SandboxViolation):
            real_sandbox.execute_plan({
                "files": [{"path": "ok.py", "content": ""}, {"path": "src/", "content": ""}],
                "testCommand": "python3 ok.py",
            })
        assert _workspaces(real_sandbox.prefix) == before

    def test_write_failure_removes_workspace(self, real_sandbox, monkeypatch):
        def half_written(workspace, files):
            with open(os.path.join(workspace, files[0]["path"]), "w", encoding="utf-8") as fh:
                fh.write(files[0]["content"])
            raise IsADirectoryError(21, "Is a directory", files[1]["path"])

        monkeypatch.setattr(SandboxExecutor, "_write_files", staticmethod(half_written))
        before = _workspaces(real_sandbox.prefix)
        with pytest.raises(SandboxViolation, match="could not be written"):
            real_sandbox.execute_plan({
                "files": [{"path": "ok.py", "content": "x = 1\n"}, {"path": "data", "content": ""}],
                "testCommand": "python3 ok.py",
            })
        assert _workspaces(real_sandbox.prefix) == before

    def test_default_command_must_still_be_allowed(self):
        executor = SandboxExecutor(default_command="make test")
        with pytest.raises(SandboxViolation):
            executor.execute_plan({"files": []})

    def test_plan_must_be_an_object(self, real_sandbox):
        with pytest.raises(SandboxViolation):
            real_sandbox.execute_plan(["not", "a", "plan"])


# ═════════════════════════════════════════════════════════════════════════════
# Execution
# ═════════════════════════════════════════════════════════════════════════════


@needs_python3
class TestExecution:
    def test_passing_run(self, real_sandbox):
        result = real_sandbox.execute_plan({
            "files": [
                {"path": "pkg/calc.py", "content": "def add(a, b):\n    return a + b\n"},
                {"path": "check.py", "content": "from pkg.calc import add\nassert add(2, 3) == 5\nprint('all good')\n"},
            ],
            "testCommand": "python3 check.py",
        })
        try:
            assert result["testResult"]["code"] == 0
            assert result["testResult"]["killed"] is False
            assert "all good" in result["testResult"]["stdout"]
            assert result["filesWritten"] == ["pkg/calc.py", "check.py"]
            assert result["toolAllowlist"] == TOOL_ALLOWLIST
            assert os.path.basename(result["workspacePath"]).startswith(real_sandbox.prefix)
            with open(os.path.join(result["workspacePath"], "pkg", "calc.py"), encoding="utf-8") as fh:
                assert "return a + b" in fh.read()
        finally:
            real_sandbox.remove_workspace(result["workspacePath"])

    def test_failing_run(self, real_sandbox):
        result = real_sandbox.execute_plan({
            "files": [{"path": "check.py", "content": "import sys\nprint('boom', file=sys.stderr)\nsys.exit(3)\n"}],
            "testCommand": "python3 check.py",
        })
        try:
            assert result["testResult"]["code"] == 3
            assert "boom" in result["testResult"]["stderr"]
        finally:
            real_sandbox.remove_workspace(result["workspacePath"])

    def test_timeout_kills_process(self):
        executor = SandboxExecutor(timeout_seconds=1, prefix="advisory-test-")
        result = executor.execute_plan({
            "files": [{"path": "slow.py", "content": "import time\ntime.sleep(30)\n"}],
            "testCommand": "python3 slow.py",
        })
        try:
            assert result["testResult"]["code"] == TIMEOUT_EXIT_CODE
            assert result["testResult"]["killed"] is True
        finally:
            executor.remove_workspace(result["workspacePath"])

    def test_network_flag_and_closed_stdin(self, real_sandbox):
        result = real_sandbox.execute_plan({
            "files": [{"path": "env.py", "content": (
                "import os, sys\n"
                "print(os.environ.get('NO_NETWORK'))\n"
                "print(repr(sys.stdin.read()))\n"
            )}],
            "testCommand": "python3 env.py",
        })
        try:
            lines = result["testResult"]["stdout"].splitlines()
            assert lines == ["1", "''"]
        finally:
            real_sandbox.remove_workspace(result["workspacePath"])

    def test_explicit_command_overrides_plan(self, real_sandbox):
        result = real_sandbox.execute_plan(
            {"files": [{"path": "a.py", "content": "print('a')"}], "testCommand": "npm test"},
            test_command="python3 a.py",
        )
        try:
            assert result["testResult"]["stdout"].strip() == "a"
        finally:
            real_sandbox.remove_workspace(result["workspacePath"])


class TestSpawnFailure:
    def test_missing_binary_is_a_violation(self, monkeypatch):
        monkeypatch.setenv("PATH", "")
        executor = SandboxExecutor(prefix="advisory-test-missing-")
        before = _workspaces(executor.prefix)
        with pytest.raises(SandboxViolation, match="could not be started"):
            executor.execute_plan({"files": [], "testCommand": "node index.js"})
        assert _workspaces(executor.prefix) == before


# ═════════════════════════════════════════════════════════════════════════════
# Cleanup
# ═════════════════════════════════════════════════════════════════════════════


class TestRemoveWorkspace:
    def test_removes_own_workspace(self, real_sandbox):
        path = tempfile.mkdtemp(prefix=real_sandbox.prefix)
        assert real_sandbox.remove_workspace(path) is True
        assert not os.path.exists(path)

    def test_refuses_foreign_prefix(self, real_sandbox):
        path = tempfile.mkdtemp(prefix="someone-else-")
        try:
            assert real_sandbox.remove_workspace(path) is False
            assert os.path.isdir(path)
        finally:
            shutil.rmtree(path)

    def test_refuses_paths_outside_tmp(self, real_sandbox, tmp_path):
        inner = tmp_path / f"{real_sandbox.prefix}nested"
        inner.mkdir()
        assert real_sandbox.remove_workspace(str(inner)) is False
        assert inner.is_dir()

    def test_empty_path(self, real_sandbox):
        assert real_sandbox.remove_workspace("") is False
        assert real_sandbox.remove_workspace(None) is False
