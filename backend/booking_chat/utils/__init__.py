from .errors import (
    error_response,
    ChatError,
    NotFoundError,
    AccessDeniedError,
    ForbiddenError,
    ChatValidationError,
    InvalidTypeError,
    TooLargeError,
    UploadFailedError,
    DeliveryUnavailableError,
    StoreUnavailableError,
)
from .attachments import is_attachment
