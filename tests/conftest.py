"""
Shared pytest fixtures for the Advisory Engagement Platform test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate, cache flush (autouse)
    - client: Flask test client (function-scoped)
    - cache / store: ProjectStore on an in-memory cache
    - make_gateway / stub_gateway: scripted stand-in for the LLM gateway
    - make_sandbox / fake_sandbox / real_sandbox: sandbox doubles and the real executor
    - make_orchestrator: LifecycleOrchestrator wired to the store and a gateway
    - canned / good_replies: assistant payloads for the happy path
"""

import json

import pytest

from advisory import create_app
from advisory.ai.assistants import (
    CodeReviewer,
    DeliverableValidator,
    FeasibilityAnalyst,
    ModuleSpecialist,
    ReportCompiler,
    RequirementsAnalyst,
    ScopeClarifier,
    WorkPlanner,
)
from advisory.ai.gateway import LLMGateway
from advisory.models import db as _db
from advisory.services.cache_service import ProjectCache, _MemoryBackend
from advisory.services.lifecycle_orchestrator import LifecycleOrchestrator
from advisory.services.project_store import ProjectStore
from advisory.services.sandbox_executor import SandboxExecutor

_SERVICE_KEYS = ("llm_gateway", "project_store", "lifecycle_orchestrator")

# Instruction fragments that identify each assistant's call
ANALYST = "requirements analyst"
CLARIFIER = "clarification needs"
FEASIBILITY = "feasibility of an engagement"
PLANNER = "work breakdown"
SPECIALIST = "work module deliverable"
CODE_PLANNER = "sandbox execution plan"
COMPILER = "compile the module deliverables"
VALIDATOR = "quality gate"


class StubGateway:
    """
    Deterministic stand-in for LLMGateway.

    ``replies`` maps an instruction fragment (see constants above) to the
    reply for that assistant: a str, a dict/list (sent as JSON), an
    Exception instance (raised), a callable ``(instruction, context)``, or
    a list of those consumed one per call (the last one repeats).
    """

    def __init__(self, replies=None, configured=True):
        self.replies = dict(replies or {})
        self.is_configured = configured
        self.calls = []

    def complete(self, instruction, context, **kwargs):
        lower = instruction.lower()
        key = next((k for k in self.replies if k in lower), None)
        self.calls.append({"key": key, "instruction": instruction, "context": context})
        if key is None:
            return "no structured answer"

        reply = self.replies[key]
        if isinstance(reply, list) and reply and key != PLANNER:
            reply = reply.pop(0) if len(reply) > 1 else reply[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(instruction, context)
        if isinstance(reply, (dict, list)):
            return json.dumps(reply)
        return reply

    def calls_for(self, key):
        return [c for c in self.calls if c["key"] == key]


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        ProjectCache(redis_url="memory://").clear()
        for key in _SERVICE_KEYS:
            app.extensions.pop(key, None)
        # no provider registered: every assistant takes its heuristic path
        app.extensions["llm_gateway"] = LLMGateway(providers={})
        yield
        for key in _SERVICE_KEYS:
            app.extensions.pop(key, None)
        ProjectCache(redis_url="memory://").clear()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def cache():
    return ProjectCache(backend=_MemoryBackend())


@pytest.fixture()
def store(cache):
    return ProjectStore(cache=cache)


@pytest.fixture()
def stub_gateway(app):
    """A StubGateway installed as the app's gateway (API tests)."""
    gateway = StubGateway()
    app.extensions["llm_gateway"] = gateway
    app.extensions.pop("lifecycle_orchestrator", None)
    return gateway


class FakeSandbox:
    """Records plans instead of spawning processes."""

    def __init__(self, exit_code=0, error=None):
        self.exit_code = exit_code
        self.error = error
        self.plans = []
        self.removed = []

    def execute_plan(self, plan, test_command=None):
        self.plans.append(plan)
        if self.error is not None:
            raise self.error
        return {
            "workspacePath": f"/tmp/advisory-code-fake{len(self.plans)}",
            "toolAllowlist": ["read_file", "write_file", "edit_file", "run_tests"],
            "testResult": {
                "code": self.exit_code,
                "stdout": "1 passed" if self.exit_code == 0 else "",
                "stderr": "" if self.exit_code == 0 else "AssertionError",
                "killed": False,
            },
            "filesWritten": [f["path"] for f in plan.get("files", [])],
        }

    def remove_workspace(self, path):
        self.removed.append(path)
        return True


@pytest.fixture()
def make_gateway():
    """StubGateway class, e.g. ``make_gateway({"quality gate": {...}})``."""
    return StubGateway


@pytest.fixture()
def make_sandbox():
    return FakeSandbox


@pytest.fixture()
def fake_sandbox():
    return FakeSandbox()


@pytest.fixture()
def make_orchestrator(store, fake_sandbox):
    """Factory: orchestrator over ``store`` with every assistant on ``gateway``."""

    def _make(gateway=None, *, sandbox=None, max_resubmissions=3, max_parallel=4, **overrides):
        gateway = gateway if gateway is not None else LLMGateway(providers={})
        parts = {
            "analyst": RequirementsAnalyst(gateway),
            "clarifier": ScopeClarifier(gateway),
            "feasibility": FeasibilityAnalyst(gateway),
            "planner": WorkPlanner(gateway),
            "specialist": ModuleSpecialist(gateway),
            "reviewer": CodeReviewer(),
            "compiler": ReportCompiler(gateway),
            "validator": DeliverableValidator(gateway),
            "sandbox": sandbox if sandbox is not None else fake_sandbox,
        }
        parts.update(overrides)
        return LifecycleOrchestrator(
            store, max_resubmissions=max_resubmissions, max_parallel=max_parallel, **parts,
        )

    return _make


@pytest.fixture()
def real_sandbox():
    return SandboxExecutor(timeout_seconds=20.0, prefix="advisory-test-")


# ── Canned assistant replies ─────────────────────────────────────────────


GOOD_DELIVERABLE = {
    "title": "Market Sizing",
    "findings": ["Segment A grows 12% a year", "Two incumbents hold 60%", "Pricing is opaque"],
    "insights": ["Mid-market is underserved", "Channel partners drive adoption"],
    "recommendations": ["Enter via mid-market", "Partner with two resellers"],
    "analysis": "Detailed segment analysis covering demand, competition and pricing. " * 3,
    "data": "Segment A: 4.2bn, Segment B: 1.1bn, Segment C: 0.7bn (2025 estimates)",
}

GOOD_REPORT = {
    "executiveSummary": (
        "The client should enter the German mid-market through reseller partnerships, "
        "starting with two regions and a focused product tier."
    ),
    "keyFindings": ["Mid-market is underserved"],
    "recommendations": ["Enter via mid-market", "Partner with two resellers"],
    "implementationRoadmap": {"phase1": "Pilot", "phase2": "Scale"},
    "riskMitigation": ["Stage spend behind pilot results"],
    "successMetrics": ["20 reseller-sourced deals in year one"],
}

APPROVED = {
    "approved": True,
    "qualityAssessment": "excellent",
    "clientReadiness": True,
    "feedback": "Ready for the client",
}

REJECTED = {
    "approved": False,
    "qualityAssessment": "adequate",
    "feedback": "Too generic",
    "requiredImprovements": ["Quantify the opportunity"],
    "resubmissionGuidance": "Quantify the market opportunity per segment",
}


@pytest.fixture()
def canned():
    """Fresh copies of the canned payloads above."""
    return {
        "deliverable": json.loads(json.dumps(GOOD_DELIVERABLE)),
        "report": json.loads(json.dumps(GOOD_REPORT)),
        "approved": dict(APPROVED),
        "rejected": json.loads(json.dumps(REJECTED)),
    }


@pytest.fixture()
def good_replies(canned):
    """Replies that take a feasible request all the way to an approved report."""
    return {
        FEASIBILITY: {"feasible": True, "complexity": "medium", "confidence": 0.9},
        SPECIALIST: canned["deliverable"],
        COMPILER: canned["report"],
        VALIDATOR: canned["approved"],
    }
