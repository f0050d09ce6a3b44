"""
Lifecycle Orchestrator tests.

Covers:
    - Intake: requirements → clarification → feasibility → plan → project
    - Execution: dependency ordering, validation, bounded resubmission
    - Failure handling: failed modules, skipped dependents, manual review
    - Cancellation before and during execution
    - Code modules through the sandbox
    - Resume of a partially executed project
    - Status snapshot
"""

import threading

import pytest

from advisory.ai.assistants import ModuleSpecialist
from advisory.core.exceptions import (
    ConflictError,
    NotFoundError,
    SandboxViolation,
    ValidationError,
)
from advisory.models.consulting import Project
from advisory.services.lifecycle_orchestrator import (
    DEFAULT_CANCEL_REASON,
    OUTCOME_CANCELLED,
    OUTCOME_COMPLETED,
    OUTCOME_MANUAL_REVIEW,
)

MARKET_QUERY = "Size the German mid-market for our invoicing product"


class RecordingSpecialist(ModuleSpecialist):
    """Records execution order; raises for module keys listed in ``fail_on``."""

    def __init__(self, gateway=None, fail_on=()):
        super().__init__(gateway)
        self.fail_on = set(fail_on)
        self.order = []
        self._lock = threading.Lock()

    def execute(self, module, *, requirements=None, guidance=None):
        with self._lock:
            self.order.append(module["module_key"])
        if module["module_key"] in self.fail_on:
            raise RuntimeError(f"{module['module_key']} exploded")
        return super().execute(module, requirements=requirements, guidance=guidance)


def _phases(store, project_id):
    return [u["phase"] for u in store.get_progress_updates(project_id, limit=500)]


def _modules_by_key(store, project_id):
    return {m["module_key"]: m for m in store.get_project(project_id)["modules"]}


# ═════════════════════════════════════════════════════════════════════════════
# Intake
# ═════════════════════════════════════════════════════════════════════════════


class TestStartProject:
    def test_feasible_intake(self, make_orchestrator, store):
        result = make_orchestrator().start_project({"query": MARKET_QUERY, "budget": "$80k"})

        project = result["project"]
        assert result["feasible"] is True
        assert project["status"] == "initiated"
        assert project["budget"] == "$80k"
        assert [m["module_key"] for m in project["modules"]] == [
            "wm_initial_analysis", "wm_market_research", "wm_final_recommendations",
        ]
        assert result["requirements"]["consultingType"] == "market_analysis"
        assert "execution" not in result
        assert _phases(store, project["id"]) == [
            "requirements_gathering", "feasibility_analysis", "work_breakdown", "project_initiated",
        ]
        assert [u["progress"] for u in result["progressUpdates"]] == [5, 15, 25, 30]

    def test_invalid_request_persists_nothing(self, make_orchestrator):
        with pytest.raises(ValidationError):
            make_orchestrator().start_project({"query": ""})
        assert Project.query.count() == 0

    def test_unknown_client(self, make_orchestrator):
        with pytest.raises(NotFoundError):
            make_orchestrator().start_project({
                "query": MARKET_QUERY, "clientId": "7d0c7f5e-8d4a-4f0e-9a51-5c1f3e2b9a10",
            })

    def test_clarification_on_request(self, make_orchestrator, store):
        result = make_orchestrator().start_project({"query": MARKET_QUERY}, clarify=True)
        assert result["requirements"]["clarification"]["fallbackUsed"] is True
        assert "scope_clarification" in _phases(store, result["project"]["id"])

    def test_vague_request_triggers_clarification(self, make_orchestrator):
        result = make_orchestrator().start_project({"query": "Help us grow"})
        assert result["requirements"]["clarificationNeeded"] is True
        assert "clarification" in result["requirements"]

    def test_infeasible_intake(self, make_orchestrator, make_gateway, store):
        gw = make_gateway({"feasibility of an engagement": {
            "feasible": False, "reason": "Budget too small", "suggestedAlternative": "Narrow scope",
        }})
        result = make_orchestrator(gw).start_project({"query": MARKET_QUERY}, auto_execute=True)

        assert result["feasible"] is False
        assert result["reason"] == "Budget too small"
        assert result["suggestedAlternative"] == "Narrow scope"
        assert result["project"]["modules"] == []
        assert "execution" not in result
        assert not any("work breakdown" in c["instruction"].lower() for c in gw.calls)
        assert _phases(store, result["project"]["id"])[-1] == "project_initiated"

    def test_infeasible_project_cannot_execute(self, make_orchestrator, make_gateway):
        gw = make_gateway({"feasibility of an engagement": {"feasible": False, "reason": "No"}})
        orch = make_orchestrator(gw)
        project_id = orch.start_project({"query": MARKET_QUERY})["project"]["id"]

        with pytest.raises(ValidationError) as exc:
            orch.execute_project(project_id)
        assert exc.value.details["reason"] == "No"


# ═════════════════════════════════════════════════════════════════════════════
# Execution
# ═════════════════════════════════════════════════════════════════════════════


class TestExecution:
    def test_auto_execute_to_completion(self, make_orchestrator, make_gateway, good_replies, store):
        seen = []
        result = make_orchestrator(make_gateway(good_replies)).start_project(
            {"query": MARKET_QUERY}, on_update=seen.append, auto_execute=True,
        )

        execution = result["execution"]
        project = result["project"]
        assert execution["outcome"] == OUTCOME_COMPLETED
        assert execution["attempts"] == 1
        assert execution["modules"] == {"completed": 3, "failed": 0, "skipped": 0}
        assert execution["report"]["approved"] is True
        assert execution["report"]["version"] == 1
        assert project["status"] == "completed"
        assert project["quality_score"] == 0.95
        assert project["execution_start"] is not None
        assert project["actual_completion"] is not None
        assert all(m["status"] == "completed" for m in project["modules"])
        assert all(m["deliverables"]["result"]["qualityScore"] == 0.95 for m in project["modules"])

        phases = _phases(store, project["id"])
        assert phases[:6] == [
            "requirements_gathering", "feasibility_analysis", "work_breakdown",
            "project_initiated", "execution_started", "executing_modules",
        ]
        assert phases.count("module_completed") == 3
        assert phases[-2:] == ["integrating_results", "completed"]
        assert result["progressUpdates"][-1]["progress"] == 100
        assert len(seen) == len(result["progressUpdates"]) == len(phases)

    def test_dependency_order(self, make_orchestrator, make_gateway, good_replies):
        gw = make_gateway(good_replies)
        specialist = RecordingSpecialist(gw)
        orch = make_orchestrator(gw, specialist=specialist)
        project_id = orch.start_project({"query": MARKET_QUERY})["project"]["id"]

        orch.execute_project(project_id)
        assert specialist.order == [
            "wm_initial_analysis", "wm_market_research", "wm_final_recommendations",
        ]

    def test_diamond_dependencies(self, make_orchestrator, make_gateway, good_replies):
        good_replies["work breakdown"] = [
            {"id": "base", "title": "Base"},
            {"id": "left", "title": "Left", "dependencies": ["base"]},
            {"id": "right", "title": "Right", "dependencies": ["base"]},
            {"id": "top", "title": "Top", "dependencies": ["left", "right"]},
        ]
        gw = make_gateway(good_replies)
        specialist = RecordingSpecialist(gw)
        orch = make_orchestrator(gw, specialist=specialist, max_parallel=2)
        project_id = orch.start_project({"query": MARKET_QUERY})["project"]["id"]

        result = orch.execute_project(project_id)
        assert result["outcome"] == OUTCOME_COMPLETED
        assert specialist.order[0] == "base"
        assert set(specialist.order[1:3]) == {"left", "right"}
        assert specialist.order[3] == "top"

    def test_progress_entries_within_range(self, make_orchestrator, make_gateway, good_replies):
        result = make_orchestrator(make_gateway(good_replies)).start_project(
            {"query": MARKET_QUERY}, auto_execute=True,
        )
        module_progress = [
            u["progress"] for u in result["progressUpdates"] if u["phase"] == "module_completed"
        ]
        assert module_progress == [60, 70, 80]
        assert all(0 <= u["progress"] <= 100 for u in result["progressUpdates"])

    def test_terminal_project_cannot_execute(self, make_orchestrator, make_gateway, good_replies):
        orch = make_orchestrator(make_gateway(good_replies))
        project_id = orch.start_project({"query": MARKET_QUERY}, auto_execute=True)["project"]["id"]

        with pytest.raises(ConflictError):
            orch.execute_project(project_id)

    def test_unknown_project(self, make_orchestrator):
        with pytest.raises(NotFoundError):
            make_orchestrator().execute_project("no-such-project")

    def test_callback_errors_are_swallowed(self, make_orchestrator, make_gateway, good_replies):
        def explode(entry):
            raise RuntimeError("listener down")

        result = make_orchestrator(make_gateway(good_replies)).start_project(
            {"query": MARKET_QUERY}, on_update=explode, auto_execute=True,
        )
        assert result["execution"]["outcome"] == OUTCOME_COMPLETED


# ═════════════════════════════════════════════════════════════════════════════
# Validation & resubmission
# ═════════════════════════════════════════════════════════════════════════════


class TestResubmission:
    def test_rejected_then_approved(self, make_orchestrator, make_gateway, good_replies, canned, store):
        good_replies["quality gate"] = [canned["rejected"], canned["approved"]]
        gw = make_gateway(good_replies)
        result = make_orchestrator(gw).start_project({"query": MARKET_QUERY}, auto_execute=True)

        execution = result["execution"]
        assert execution["outcome"] == OUTCOME_COMPLETED
        assert execution["attempts"] == 2
        assert _phases(store, result["project"]["id"]).count("resubmission") == 1

        specialist_calls = gw.calls_for("work module deliverable")
        assert len(specialist_calls) == 6
        guided = [c for c in specialist_calls if "Quantify the market opportunity" in c["context"]]
        assert len(guided) == 3
        assert "Quantify the market opportunity" in gw.calls_for("compile the module deliverables")[1]["context"]

    def test_manual_review_after_bounded_resubmissions(self, make_orchestrator, store):
        orch = make_orchestrator()
        project_id = orch.start_project({"query": MARKET_QUERY})["project"]["id"]

        result = orch.execute_project(project_id)
        assert result["outcome"] == OUTCOME_MANUAL_REVIEW
        assert result["attempts"] == 4
        assert result["status"] == "in_progress"
        assert result["validation"]["approved"] is False
        assert result["report"]["approved"] is False

        phases = _phases(store, project_id)
        assert phases.count("resubmission") == 3
        assert phases[-1] == "manual_review"
        assert store.get_latest_report(project_id)["version"] == 1

    def test_zero_resubmissions(self, make_orchestrator):
        orch = make_orchestrator(max_resubmissions=0)
        project_id = orch.start_project({"query": MARKET_QUERY})["project"]["id"]
        result = orch.execute_project(project_id)
        assert result["outcome"] == OUTCOME_MANUAL_REVIEW
        assert result["attempts"] == 1


# ═════════════════════════════════════════════════════════════════════════════
# Module failures
# ═════════════════════════════════════════════════════════════════════════════


class TestModuleFailures:
    def test_failed_module_skips_dependents(self, make_orchestrator, make_gateway, good_replies, store):
        gw = make_gateway(good_replies)
        specialist = RecordingSpecialist(gw, fail_on={"wm_market_research"})
        orch = make_orchestrator(gw, specialist=specialist)
        project_id = orch.start_project({"query": MARKET_QUERY})["project"]["id"]

        result = orch.execute_project(project_id)
        assert result["outcome"] == OUTCOME_MANUAL_REVIEW
        assert result["modules"] == {"completed": 1, "failed": 1, "skipped": 1}
        assert result["report"] is None
        assert gw.calls_for("compile the module deliverables") == []
        assert store.get_latest_report(project_id) is None

        modules = _modules_by_key(store, project_id)
        assert modules["wm_initial_analysis"]["status"] == "completed"
        assert modules["wm_market_research"]["status"] == "failed"
        assert modules["wm_market_research"]["deliverables"]["error"] == "wm_market_research exploded"
        assert modules["wm_final_recommendations"]["status"] == "skipped"

        phases = _phases(store, project_id)
        assert "module_failed" in phases
        assert phases[-1] == "manual_review"

    def test_independent_modules_still_run(self, make_orchestrator, make_gateway, good_replies, store):
        good_replies["work breakdown"] = [
            {"id": "a", "title": "A"},
            {"id": "b", "title": "B"},
            {"id": "c", "title": "C", "dependencies": ["a"]},
        ]
        gw = make_gateway(good_replies)
        specialist = RecordingSpecialist(gw, fail_on={"a"})
        orch = make_orchestrator(gw, specialist=specialist, max_parallel=1)
        project_id = orch.start_project({"query": MARKET_QUERY})["project"]["id"]

        result = orch.execute_project(project_id)
        assert result["modules"] == {"completed": 1, "failed": 1, "skipped": 1}
        modules = _modules_by_key(store, project_id)
        assert modules["b"]["status"] == "completed"
        assert modules["c"]["status"] == "skipped"
        assert "c" not in specialist.order


# ═════════════════════════════════════════════════════════════════════════════
# Cancellation
# ═════════════════════════════════════════════════════════════════════════════


class TestCancellation:
    def test_cancel_initiated_project(self, make_orchestrator, store):
        orch = make_orchestrator()
        project_id = orch.start_project({"query": MARKET_QUERY})["project"]["id"]

        result = orch.cancel_project(project_id, "Budget frozen")
        assert result["status"] == "cancelled"
        assert result["previousStatus"] == "initiated"
        assert result["reason"] == "Budget frozen"
        assert result["cancelledAt"] is not None

        project = store.get_project(project_id)
        assert project["status"] == "cancelled"
        assert project["cancellation_reason"] == "Budget frozen"
        last = store.get_progress_updates(project_id, limit=1)[0]
        assert last["phase"] == "cancelled"
        assert last["progress"] == 30

    def test_blank_reason_uses_default(self, make_orchestrator):
        orch = make_orchestrator()
        project_id = orch.start_project({"query": MARKET_QUERY})["project"]["id"]
        assert orch.cancel_project(project_id, "   ")["reason"] == DEFAULT_CANCEL_REASON

    def test_cancel_twice_conflicts(self, make_orchestrator):
        orch = make_orchestrator()
        project_id = orch.start_project({"query": MARKET_QUERY})["project"]["id"]
        orch.cancel_project(project_id)

        with pytest.raises(ConflictError) as exc:
            orch.cancel_project(project_id)
        assert exc.value.value == "cancelled"
        with pytest.raises(ConflictError):
            orch.execute_project(project_id)

    def test_cancel_completed_conflicts(self, make_orchestrator, make_gateway, good_replies):
        orch = make_orchestrator(make_gateway(good_replies))
        project_id = orch.start_project({"query": MARKET_QUERY}, auto_execute=True)["project"]["id"]
        with pytest.raises(ConflictError):
            orch.cancel_project(project_id)

    def test_cancel_unknown(self, make_orchestrator):
        with pytest.raises(NotFoundError):
            make_orchestrator().cancel_project("missing")

    def test_cancel_during_execution(self, make_orchestrator, make_gateway, good_replies, store):
        gw = make_gateway(good_replies)
        specialist = RecordingSpecialist(gw)
        orch = make_orchestrator(gw, specialist=specialist)
        project_id = orch.start_project({"query": MARKET_QUERY})["project"]["id"]

        def cancel_after_first_module(entry):
            if entry["phase"] == "module_completed":
                orch.cancel_project(project_id, "Client paused the engagement")

        result = orch.execute_project(project_id, on_update=cancel_after_first_module)

        assert result["outcome"] == OUTCOME_CANCELLED
        assert result["status"] == "cancelled"
        assert specialist.order == ["wm_initial_analysis"]
        assert store.get_latest_report(project_id) is None

        modules = _modules_by_key(store, project_id)
        assert modules["wm_market_research"]["status"] == "pending"
        phases = _phases(store, project_id)
        assert "cancelled" in phases
        assert phases[-1] == "execution_cancelled"


# ═════════════════════════════════════════════════════════════════════════════
# Code modules
# ═════════════════════════════════════════════════════════════════════════════


CODE_REQUEST = {
    "query": "Build a prototype invoice parser for our finance team",
    "executionPlan": {
        "objective": "Parse invoice totals",
        "files": [{"path": "index.js", "content": "console.log('ok')"}],
        "testCommand": "node index.js",
    },
}


class TestCodeModules:
    def test_passing_sandbox_run(self, make_orchestrator, make_gateway, good_replies, fake_sandbox, store):
        orch = make_orchestrator(make_gateway(good_replies))
        result = orch.start_project(dict(CODE_REQUEST), auto_execute=True)

        assert result["execution"]["outcome"] == OUTCOME_COMPLETED
        assert fake_sandbox.plans == [CODE_REQUEST["executionPlan"]]
        assert fake_sandbox.removed == ["/tmp/advisory-code-fake1"]

        prototype = _modules_by_key(store, result["project"]["id"])["wm_prototype"]
        deliverable = prototype["deliverables"]["result"]
        assert prototype["status"] == "completed"
        assert prototype["quality_score"] == 0.9
        assert deliverable["review"]["approved"] is True
        assert deliverable["review"]["files"] == ["index.js"]

    def test_failing_tests_complete_with_low_quality(self, make_orchestrator, make_gateway,
                                                      good_replies, make_sandbox, store):
        sandbox = make_sandbox(exit_code=1)
        orch = make_orchestrator(make_gateway(good_replies), sandbox=sandbox)
        result = orch.start_project(dict(CODE_REQUEST), auto_execute=True)

        prototype = _modules_by_key(store, result["project"]["id"])["wm_prototype"]
        assert prototype["status"] == "completed"
        assert prototype["quality_score"] == 0.4
        assert prototype["deliverables"]["result"]["review"]["approved"] is False
        assert sandbox.removed == ["/tmp/advisory-code-fake1"]

    def test_sandbox_violation_fails_module(self, make_orchestrator, make_gateway,
                                            good_replies, make_sandbox, store):
        sandbox = make_sandbox(error=SandboxViolation("Disallowed file path"))
        orch = make_orchestrator(make_gateway(good_replies), sandbox=sandbox)
        result = orch.start_project(dict(CODE_REQUEST), auto_execute=True)

        assert result["execution"]["outcome"] == OUTCOME_MANUAL_REVIEW
        modules = _modules_by_key(store, result["project"]["id"])
        assert modules["wm_prototype"]["status"] == "failed"
        assert modules["wm_final_recommendations"]["status"] == "skipped"


# ═════════════════════════════════════════════════════════════════════════════
# Resume & status
# ═════════════════════════════════════════════════════════════════════════════


class TestResumeAndStatus:
    def test_resume_skips_completed_modules(self, make_orchestrator, make_gateway, good_replies, canned, store):
        gw = make_gateway(good_replies)
        orch = make_orchestrator(gw)
        project = orch.start_project({"query": MARKET_QUERY})["project"]
        first = project["modules"][0]

        store.update_project(project["id"], {"status": "in_progress"})
        store.update_work_module(first["id"], {
            "status": "completed",
            "quality_score": 0.95,
            "deliverables": {"result": {**canned["deliverable"], "qualityScore": 0.95}},
        })

        result = orch.execute_project(project["id"])
        assert result["outcome"] == OUTCOME_COMPLETED
        assert len(gw.calls_for("work module deliverable")) == 2
        updates = result["progressUpdates"]
        assert updates[0]["message"].startswith("Execution resumed; 1 of 3")
        assert len(result["report"]["deliverables"]) == 3

    def test_resume_after_manual_review(self, make_orchestrator, make_gateway, good_replies):
        project_id = make_orchestrator().start_project({"query": MARKET_QUERY})["project"]["id"]
        assert make_orchestrator().execute_project(project_id)["outcome"] == OUTCOME_MANUAL_REVIEW

        result = make_orchestrator(make_gateway(good_replies)).execute_project(project_id)
        assert result["outcome"] == OUTCOME_COMPLETED
        assert result["report"]["version"] == 2

    def test_status_snapshot(self, make_orchestrator, make_gateway, good_replies):
        orch = make_orchestrator(make_gateway(good_replies))
        project_id = orch.start_project({"query": MARKET_QUERY}, auto_execute=True)["project"]["id"]

        status = orch.get_status(project_id)
        assert status["status"] == "completed"
        assert status["progress"] == 100
        assert status["feasible"] is True
        assert status["qualityScore"] == 0.95
        assert status["modules"]["total"] == 3
        assert status["modules"]["completed"] == 3
        assert status["modules"]["failed"] == 0
        assert status["reportId"] is not None
        assert len(status["latestUpdates"]) == 10
        assert status["latestUpdates"][-1]["phase"] == "completed"

    def test_status_of_new_project(self, make_orchestrator):
        orch = make_orchestrator()
        project_id = orch.start_project({"query": MARKET_QUERY})["project"]["id"]
        status = orch.get_status(project_id)
        assert status["status"] == "initiated"
        assert status["progress"] == 30
        assert status["modules"]["pending"] == 3
        assert status["reportId"] is None

    def test_status_unknown(self, make_orchestrator):
        with pytest.raises(NotFoundError):
            make_orchestrator().get_status("missing")
