"""
Rate limiting configuration.

The Limiter instance lives in advisory/__init__.py with no default limits.
Consulting routes fan out into LLM calls and sandbox runs, so they share one
per-IP budget; health probes are exempt.

Usage:
    from advisory.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

DEFAULT_CONSULTING_LIMIT = "10/minute"


def init_rate_limits(app, limiter):
    """Attach limits to the registered blueprints. No-op when TESTING is set."""
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    consulting_limit = app.config.get("CONSULTING_RATE_LIMIT") or DEFAULT_CONSULTING_LIMIT

    consulting = app.blueprints.get("consulting")
    if consulting is not None:
        limiter.limit(consulting_limit)(consulting)

    health = app.blueprints.get("health")
    if health is not None:
        limiter.exempt(health)

    logger.info("Rate limits applied: consulting=%s, health=exempt", consulting_limit)
