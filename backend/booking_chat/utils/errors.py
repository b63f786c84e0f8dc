from typing import Dict, Optional
from fastapi import HTTPException, status
import logging

logger = logging.getLogger(__name__)


def error_response(
    message: str,
    field_errors: Dict[str, str],
    code: int = status.HTTP_422_UNPROCESSABLE_ENTITY,
) -> HTTPException:
    """Return an HTTPException with a consistent structure and log details."""
    logger.error("%s %s", message, field_errors)
    detail = {"message": message, "field_errors": field_errors}
    return HTTPException(status_code=code, detail=detail)


class ChatError(Exception):
    """Base class for messaging failures that surface to the caller.

    Each subclass carries the HTTP status the API layer answers with so the
    store and directory can raise without knowing about FastAPI.
    """

    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, field_errors: Optional[Dict[str, str]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.field_errors = dict(field_errors or {})

    def to_http(self) -> HTTPException:
        return error_response(self.message, self.field_errors, self.status_code)


class NotFoundError(ChatError):
    status_code = status.HTTP_404_NOT_FOUND


class AccessDeniedError(ChatError):
    """Requester is not one of the conversation's two participants."""

    status_code = status.HTTP_403_FORBIDDEN


class ForbiddenError(AccessDeniedError):
    """Participant check passed but the action itself is not allowed."""


class ChatValidationError(ChatError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


class InvalidTypeError(ChatValidationError):
    status_code = status.HTTP_415_UNSUPPORTED_MEDIA_TYPE


class TooLargeError(ChatValidationError):
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE


class UploadFailedError(ChatError):
    """Transient storage failure; the caller should offer a retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class DeliveryUnavailableError(ChatError):
    """Push subscription could not be established; fall back to polling."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class StoreUnavailableError(ChatError):
    """The message database failed transiently (locked, connection dropped)."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
