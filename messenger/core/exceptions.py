"""
Custom exceptions for the Messenger API.

The service layer raises these; the API layer renders them through the
exception handlers registered in ``config.api``.
"""

from ninja import Schema


class ErrorSchema(Schema):
    """Standard error response schema."""

    code: str
    message: str
    details: dict | None = None


class APIException(Exception):
    """Base exception for API errors."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    message: str = "Une erreur interne est survenue."

    def __init__(
        self,
        message: str | None = None,
        code: str | None = None,
        details: dict | None = None,
    ):
        self.message = message or self.__class__.message
        self.code = code or self.__class__.code
        self.details = details
        super().__init__(self.message)

    def to_response(self) -> tuple[int, ErrorSchema]:
        """Convert exception to API response tuple."""
        return self.status_code, ErrorSchema(
            code=self.code,
            message=self.message,
            details=self.details,
        )


# Authorization Exceptions
class PermissionDeniedError(APIException):
    """User doesn't have required permissions."""

    status_code = 403
    code = "PERMISSION_DENIED"
    message = "Vous n'avez pas les permissions nécessaires."


class NotOwnerError(PermissionDeniedError):
    """User is not the author/owner of the resource."""

    code = "NOT_OWNER"
    message = "Vous n'êtes pas le propriétaire de cette ressource."


# Resource Exceptions
class NotFoundError(APIException):
    """Resource not found."""

    status_code = 404
    code = "NOT_FOUND"
    message = "Ressource introuvable."


class ConflictError(APIException):
    """Concurrent writers collided on a unique key or a stale version."""

    status_code = 409
    code = "CONFLICT"
    message = "La ressource a été modifiée simultanément, veuillez réessayer."


class InvalidOperationError(APIException):
    """Operation not allowed in the resource's current state."""

    status_code = 409
    code = "INVALID_OPERATION"
    message = "Opération impossible dans l'état actuel."


# Validation Exceptions
class ValidationError(APIException):
    """Invalid input data."""

    status_code = 400
    code = "VALIDATION_ERROR"
    message = "Données invalides."


# Storage Exceptions
class InternalError(APIException):
    """The backing store is unavailable."""

    status_code = 503
    code = "STORAGE_UNAVAILABLE"
    message = "Le service de stockage est indisponible."
