"""
Sandbox Executor — Service Layer.

Runs generated code in an ephemeral workspace:
    - Path validation:     relative file paths only, no ``..`` segments, no ``~``,
                           no path used as both a file and a directory
    - Command allow-list:  first token must be a known test runner
    - Workspace:           fresh temp directory per call, files written before the run
    - Process:             one child, no shell, stdin closed, wall-clock timeout

Validation happens before anything is written or spawned. ``NO_NETWORK=1``
is an advisory flag for the child process; there is no OS-level isolation.
The caller owns workspace cleanup (see ``remove_workspace``).
"""

import logging
import os
import posixpath
import shutil
import subprocess
import tempfile

from advisory.core.exceptions import SandboxViolation

logger = logging.getLogger(__name__)

TOOL_ALLOWLIST = ["read_file", "write_file", "edit_file", "run_tests"]
ALLOWED_COMMANDS = frozenset({"npm", "pnpm", "yarn", "node", "pytest", "python", "python3"})
DEFAULT_TEST_COMMAND = "npm test -- --runInBand"
DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_PREFIX = "advisory-code-"
TIMEOUT_EXIT_CODE = 124


def _normalise(path: str) -> str:
    return posixpath.normpath(path.replace("\\", "/"))


def validate_relative_path(path) -> bool:
    """True for relative file paths that cannot escape the workspace."""
    if not isinstance(path, str) or not path.strip():
        return False
    if path.startswith(("/", "\\", "~")) or os.path.isabs(path):
        return False
    # Windows drive letters ("C:foo") are absolute enough to reject
    if len(path) > 1 and path[1] == ":":
        return False
    segments = path.replace("\\", "/").split("/")
    if ".." in segments:
        return False
    # must name a file, not a directory
    return not path.endswith(("/", "\\")) and _normalise(path) != "."


def find_path_collision(paths: list[str]) -> str | None:
    """First path that another path in the plan needs as a directory."""
    normalised = [_normalise(p) for p in paths]
    directories = set()
    for path in normalised:
        parent = posixpath.dirname(path)
        while parent:
            directories.add(parent)
            parent = posixpath.dirname(parent)
    for original, path in zip(paths, normalised):
        if path in directories:
            return original
    return None


def parse_command(command: str) -> list[str]:
    """Whitespace-split command whose first token is allow-listed."""
    tokens = str(command or "").split()
    if not tokens or tokens[0] not in ALLOWED_COMMANDS:
        raise SandboxViolation(
            "Test command is not allowed in sandbox",
            details={"command": tokens[0] if tokens else "", "allowed": sorted(ALLOWED_COMMANDS)},
        )
    return tokens


class SandboxExecutor:
    """Write a plan's files into a fresh workspace and run its test command."""

    def __init__(self, timeout_seconds=DEFAULT_TIMEOUT_SECONDS, prefix=DEFAULT_PREFIX,
                 default_command=DEFAULT_TEST_COMMAND):
        self.timeout_seconds = float(timeout_seconds)
        self.prefix = prefix
        self.default_command = default_command

    def execute_plan(self, plan: dict, test_command: str | None = None) -> dict:
        """
        Args:
            plan: {files: [{path, content}], testCommand}
            test_command: overrides ``plan["testCommand"]``.

        Returns:
            {workspacePath, toolAllowlist, testResult: {code, stdout, stderr, killed},
             filesWritten}

        Raises:
            SandboxViolation: disallowed path or command, or the command could
                not be started, or the files could not be written. Nothing is
                written for path/command violations, and a workspace whose
                path is not returned is removed.
        """
        if not isinstance(plan, dict):
            raise SandboxViolation("Sandbox plan must be an object")
        files = plan.get("files") or []
        if not isinstance(files, list):
            raise SandboxViolation("Sandbox plan files must be a list")

        for entry in files:
            path = entry.get("path") if isinstance(entry, dict) else None
            if not validate_relative_path(path):
                raise SandboxViolation(
                    f"Disallowed file path in sandbox plan: {path!r}", details={"path": path},
                )
        collision = find_path_collision([entry["path"] for entry in files])
        if collision is not None:
            raise SandboxViolation(
                f"Sandbox plan uses {collision!r} as both a file and a directory",
                details={"path": collision},
            )
        argv = parse_command(test_command or plan.get("testCommand") or self.default_command)

        workspace = tempfile.mkdtemp(prefix=self.prefix)
        try:
            self._write_files(workspace, files)
        except OSError as exc:
            self.remove_workspace(workspace)
            raise SandboxViolation(
                "Sandbox plan files could not be written",
                details={"error": str(exc)},
            ) from exc

        logger.info(
            "Sandbox run in %s: %s (%d files, timeout %.0fs, network restriction advisory only)",
            workspace, " ".join(argv), len(files), self.timeout_seconds,
        )
        try:
            test_result = self._run(argv, workspace)
        except SandboxViolation:
            self.remove_workspace(workspace)
            raise
        logger.info("Sandbox run finished: exit=%s killed=%s", test_result["code"], test_result["killed"])

        return {
            "workspacePath": workspace,
            "toolAllowlist": list(TOOL_ALLOWLIST),
            "testResult": test_result,
            "filesWritten": [entry["path"] for entry in files],
        }

    @staticmethod
    def _write_files(workspace: str, files: list[dict]):
        for entry in files:
            full_path = os.path.join(workspace, _normalise(entry["path"]))
            parent = os.path.dirname(full_path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            with open(full_path, "w", encoding="utf-8") as fh:
                fh.write(str(entry.get("content") or ""))

    def _run(self, argv: list[str], workspace: str) -> dict:
        env = {**os.environ, "NO_NETWORK": "1"}
        try:
            proc = subprocess.Popen(
                argv,
                cwd=workspace,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except OSError as exc:
            raise SandboxViolation(
                f"Sandbox command could not be started: {argv[0]}",
                details={"command": argv[0], "error": str(exc)},
            ) from exc

        try:
            stdout, stderr = proc.communicate(timeout=self.timeout_seconds)
        except subprocess.TimeoutExpired:
            proc.kill()
            stdout, stderr = proc.communicate()
            logger.warning("Sandbox command timed out after %.0fs: %s", self.timeout_seconds, argv[0])
            return {"code": TIMEOUT_EXIT_CODE, "stdout": stdout or "", "stderr": stderr or "", "killed": True}

        return {"code": proc.returncode, "stdout": stdout or "", "stderr": stderr or "", "killed": False}

    def remove_workspace(self, path: str) -> bool:
        """Delete a workspace this executor created. Returns False for foreign paths."""
        if not path:
            return False
        real = os.path.realpath(path)
        tmp_root = os.path.realpath(tempfile.gettempdir())
        if os.path.dirname(real) != tmp_root or not os.path.basename(real).startswith(self.prefix):
            logger.warning("Refusing to remove non-sandbox path %s", path)
            return False
        try:
            shutil.rmtree(real)
        except OSError as exc:
            logger.warning("Could not remove sandbox workspace %s: %s", path, exc)
            return False
        return True
