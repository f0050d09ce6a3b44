"""
Advisory Engagement Platform
Consulting Blueprint.

Endpoints:
    INTAKE       /api/v1/consulting/start                          POST
    EXECUTION    /api/v1/consulting/execute/<project_id>           POST
                 /api/v1/consulting/status/<project_id>            GET
                 /api/v1/consulting/cancel/<project_id>            POST

    PROJECTS     /api/v1/consulting/projects/<project_id>          GET
                 /api/v1/consulting/projects/<project_id>/progress GET
                 /api/v1/consulting/projects/<project_id>/report   GET
                 /api/v1/consulting/clients/<client_id>/projects   GET

Execution is synchronous: the request returns once the run has completed,
been cancelled or been sent to manual review.
"""

import logging

from flask import Blueprint, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

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
from advisory.blueprints import limit_arg
from advisory.core.exceptions import (
    ConflictError,
    NotFoundError,
    SandboxViolation,
    TransientBackendError,
    ValidationError,
)
from advisory.services.cache_service import ProjectCache
from advisory.services.lifecycle_orchestrator import DEFAULT_CANCEL_REASON, LifecycleOrchestrator
from advisory.services.project_store import (
    DEFAULT_CLIENT_PROJECTS_LIMIT,
    DEFAULT_PROGRESS_LIMIT,
    ProjectStore,
)
from advisory.services.sandbox_executor import SandboxExecutor
from advisory.utils.errors import E, api_error

logger = logging.getLogger(__name__)

consulting_bp = Blueprint("consulting", __name__, url_prefix="/api/v1/consulting")


# ── Lazy singletons stored on the Flask app (test-isolation safe) ─────────


def get_gateway():
    ext = current_app.extensions
    if "llm_gateway" not in ext:
        cfg = current_app.config
        ext["llm_gateway"] = LLMGateway(
            default_model=cfg.get("LLM_DEFAULT_CHAT_MODEL"),
            fallback_models=cfg.get("LLM_FALLBACK_MODELS"),
            max_retries=cfg.get("LLM_MAX_RETRIES", 2),
        )
    return ext["llm_gateway"]


def get_project_store():
    ext = current_app.extensions
    if "project_store" not in ext:
        cfg = current_app.config
        ext["project_store"] = ProjectStore(
            cache=ProjectCache(redis_url=cfg.get("REDIS_URL")),
            project_ttl=cfg.get("PROJECT_CACHE_TTL", 300),
            client_projects_ttl=cfg.get("CLIENT_PROJECTS_CACHE_TTL", 180),
        )
    return ext["project_store"]


def get_orchestrator():
    ext = current_app.extensions
    if "lifecycle_orchestrator" not in ext:
        cfg = current_app.config
        gateway = get_gateway()
        ext["lifecycle_orchestrator"] = LifecycleOrchestrator(
            get_project_store(),
            analyst=RequirementsAnalyst(gateway),
            clarifier=ScopeClarifier(gateway),
            feasibility=FeasibilityAnalyst(gateway),
            planner=WorkPlanner(gateway, max_modules=cfg.get("MAX_WORK_MODULES", 12)),
            specialist=ModuleSpecialist(gateway),
            reviewer=CodeReviewer(),
            compiler=ReportCompiler(gateway),
            validator=DeliverableValidator(gateway),
            sandbox=SandboxExecutor(
                timeout_seconds=cfg.get("CODE_SANDBOX_TIMEOUT_SECONDS", 120.0),
                prefix=cfg.get("SANDBOX_PREFIX", "advisory-code-"),
            ),
            max_resubmissions=cfg.get("MAX_RESUBMISSIONS", 3),
            max_parallel=cfg.get("MAX_PARALLEL_MODULES", 4),
        )
    return ext["lifecycle_orchestrator"]


# ── Error handlers ────────────────────────────────────────────────────────


@consulting_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@consulting_bp.errorhandler(SandboxViolation)
def _handle_sandbox_violation(error: SandboxViolation):
    return api_error(E.SANDBOX_VIOLATION, str(error), details=error.details)


@consulting_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@consulting_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return api_error(E.CONFLICT_STATE, str(error), details={error.field: error.value})


@consulting_bp.errorhandler(TransientBackendError)
def _handle_backend(error: TransientBackendError):
    logger.error("Backend unavailable in consulting endpoint=%s: %s", request.endpoint, error)
    return api_error(E.BACKEND_UNAVAILABLE, "Storage backend unavailable, retry later")


@consulting_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in consulting_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


# ═════════════════════════════════════════════════════════════════════════
# Intake & execution
# ═════════════════════════════════════════════════════════════════════════


@consulting_bp.route("/start", methods=["POST"])
def start_project():
    """Analyse a client request and create the project (optionally executing it)."""
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        return api_error(E.VALIDATION_REQUIRED, "JSON body is required")
    query = body.get("query")
    if not isinstance(query, str) or not query.strip():
        return api_error(E.VALIDATION_REQUIRED, "query is required", details={"query": "required"})

    auto_execute = bool(body.pop("autoExecute", False))
    clarify = bool(body.pop("clarify", False))
    result = get_orchestrator().start_project(body, auto_execute=auto_execute, clarify=clarify)
    return jsonify(result), 201


@consulting_bp.route("/execute/<project_id>", methods=["POST"])
def execute_project(project_id):
    execution = get_orchestrator().execute_project(project_id)
    updates = execution.pop("progressUpdates", [])
    return jsonify({"execution": execution, "progressUpdates": updates}), 200


@consulting_bp.route("/status/<project_id>", methods=["GET"])
def project_status(project_id):
    return jsonify(get_orchestrator().get_status(project_id)), 200


@consulting_bp.route("/cancel/<project_id>", methods=["POST"])
def cancel_project(project_id):
    body = request.get_json(silent=True) or {}
    reason = body.get("reason") if isinstance(body, dict) else None
    cancellation = get_orchestrator().cancel_project(project_id, reason or DEFAULT_CANCEL_REASON)
    return jsonify({"cancellation": cancellation}), 200


# ═════════════════════════════════════════════════════════════════════════
# Project reads
# ═════════════════════════════════════════════════════════════════════════


@consulting_bp.route("/projects/<project_id>", methods=["GET"])
def get_project(project_id):
    return jsonify(get_project_store().get_project(project_id)), 200


@consulting_bp.route("/projects/<project_id>/progress", methods=["GET"])
def get_progress(project_id):
    """Progress ledger, oldest first."""
    limit = limit_arg(DEFAULT_PROGRESS_LIMIT)
    store = get_project_store()
    store.get_project_status(project_id)
    updates = store.get_progress_updates(project_id, limit=limit)
    return jsonify({"projectId": project_id, "updates": updates, "count": len(updates)}), 200


@consulting_bp.route("/projects/<project_id>/report", methods=["GET"])
def get_report(project_id):
    report = get_project_store().get_latest_report(project_id)
    if report is None:
        return api_error(E.NOT_FOUND, f"No report for project {project_id}")
    return jsonify(report), 200


@consulting_bp.route("/clients/<client_id>/projects", methods=["GET"])
def get_client_projects(client_id):
    limit = limit_arg(DEFAULT_CLIENT_PROJECTS_LIMIT)
    projects = get_project_store().get_client_projects(client_id, limit=limit)
    return jsonify({"clientId": client_id, "projects": projects, "count": len(projects)}), 200
