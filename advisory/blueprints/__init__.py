"""
Advisory Engagement Platform
Blueprint registry.
"""

from flask import request

from advisory.core.exceptions import ValidationError


def limit_arg(default_limit, max_limit=1000):
    """Read the ``limit`` query parameter.

    Missing → ``default_limit``; values above ``max_limit`` are capped.

    Raises:
        ValidationError: not an integer, or below 1.
    """
    raw = request.args.get("limit")
    if raw is None:
        return default_limit
    try:
        limit = int(raw)
    except (ValueError, TypeError):
        raise ValidationError("limit must be a positive integer", details={"limit": raw})
    if limit < 1:
        raise ValidationError("limit must be a positive integer", details={"limit": raw})
    return min(limit, max_limit)
