"""
Application-wide exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="AuthorizationWorkflow", resource_id=42)
    raise ValidationError("amount must be >= 0", details={"amount": "negative"})
    raise ConflictError("Step 7 is no longer pendiente", resource="WorkflowStep")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Maps to HTTP 404.

    Args:
        resource: Human-readable model/entity name (e.g. "WorkflowStep").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint): the data
    was well-formed but violated a business rule, e.g. a workflow type and
    amount that match no active matrix rule.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation collides with the current state of a resource.

    Examples: a step that was already decided, an ambiguous delegation
    lookup, an overlapping delegation window.

    Maps to HTTP 409.
    """

    def __init__(self, message: str, *, resource: str | None = None,
                 details: dict | None = None) -> None:
        self.resource = resource
        self.details = details or {}
        super().__init__(message)


class PermissionDeniedError(Exception):
    """Raised when the acting user may not perform the operation.

    Maps to HTTP 403.
    """

    def __init__(self, message: str, user_id: int | None = None) -> None:
        self.user_id = user_id
        super().__init__(message)
