"""
Platform-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from advisory.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Project", resource_id=project_id)
    raise ValidationError("query is required", details={"query": "missing"})
"""


class NotFoundError(Exception):
    """Raised when a requested project, module or client does not exist.

    Maps to HTTP 404.

    Args:
        resource: Human-readable entity name (e.g. "Project", "WorkModule").
        resource_id: The id that was looked up.
    """

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is malformed or violates a business rule.

    Always raised before any side effect (no rows written, no process spawned).
    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class SandboxViolation(ValidationError):
    """Raised when a sandbox plan names a disallowed path or command."""


class ConflictError(Exception):
    """Raised when an operation is not allowed in the resource's current state.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field whose value blocks the operation (usually "status").
        value: The current value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} {field}={value!r} does not allow this operation"
        super().__init__(msg)


class TransientBackendError(Exception):
    """Raised when the relational store or cache is unreachable or errors.

    Store failures roll back and surface to the caller (HTTP 503).
    Cache failures are logged and never surfaced.
    """


class GenerativeBackendError(Exception):
    """Raised by the LLM gateway when no provider answers.

    Every analysis call site catches it and falls back to heuristics.
    """
