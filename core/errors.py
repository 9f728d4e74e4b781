"""
Domain error taxonomy.

Services raise these; core.exception_handlers turns them into the standard
error envelope with the matching HTTP status. Nothing persistence-specific
(IntegrityError, OperationalError) is allowed to cross the service boundary.
"""
from typing import Any, Optional


class ServiceError(Exception):
    """Base class for every error the core reports to its callers."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(ServiceError):
    """Malformed or out-of-range input, caught before mutating state."""

    status_code = 400
    code = "validation_error"


class ConflictError(ServiceError):
    """Uniqueness violation, duplicate batch entry or illegal state transition."""

    status_code = 409
    code = "conflict"


class NotFoundError(ServiceError):
    status_code = 404
    code = "not_found"


class UnauthorizedError(ServiceError):
    status_code = 401
    code = "unauthorized"


class ForbiddenError(ServiceError):
    status_code = 403
    code = "forbidden"


class InternalError(ServiceError):
    """Storage or transport failure."""
