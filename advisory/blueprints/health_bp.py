"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — simple 200 for load balancers
    GET /api/v1/health/live   — store health (database + project cache)
"""

import logging

from flask import Blueprint, current_app, jsonify

from advisory.blueprints.consulting_bp import get_gateway, get_project_store
from advisory.core.exceptions import TransientBackendError

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    """Simple readiness probe — always 200 if app is running."""
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    """Detailed liveness check with dependency status."""
    try:
        checks = get_project_store().health_check()
    except TransientBackendError as exc:
        logger.error("Health check failed: %s", exc)
        return jsonify({"status": "error", "database": False, "detail": str(exc)}), 503

    checks["llm"] = {"configured": get_gateway().is_configured}
    checks["app"] = {
        "name": "Advisory Engagement Platform",
        "debug": current_app.debug,
        "testing": current_app.testing,
    }
    checks["status"] = "ok" if checks["cache"].get("status") == "ok" else "degraded"
    return jsonify(checks), 200
