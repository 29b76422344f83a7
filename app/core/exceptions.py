from typing import Any
from fastapi import HTTPException, status


class ServiceError(HTTPException):
    """Base for errors raised by the service layer.

    Rendered by the application as ``{"error": <error_code>, "detail": ...}``.
    """
    error_code = "error"
    status_code_default = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: Any = None):
        super().__init__(
            status_code=self.status_code_default,
            detail=detail if detail is not None else self.error_code,
        )


class ValidationFailedError(ServiceError):
    error_code = "validation_failed"


class NotFoundError(ServiceError):
    error_code = "not_found"
    status_code_default = status.HTTP_404_NOT_FOUND


class InvalidDateError(ServiceError):
    error_code = "invalid_date"


class SlotConflictError(ServiceError):
    error_code = "slot_conflict"


class ForbiddenError(ServiceError):
    error_code = "forbidden"
    status_code_default = status.HTTP_403_FORBIDDEN


class InvalidStateTransitionError(ServiceError):
    error_code = "invalid_state_transition"


class InternalFailureError(ServiceError):
    error_code = "internal_error"
    status_code_default = status.HTTP_500_INTERNAL_SERVER_ERROR
