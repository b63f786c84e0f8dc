"""Validate and store chat image attachments.

The uploader only produces a public URL; turning that URL into a message is a
separate ``crud_message.append`` call so a preview can be cancelled without
leaving anything in the conversation.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from ..core.config import settings
from ..utils.attachments import guess_extension
from ..utils.errors import (
    ChatValidationError,
    InvalidTypeError,
    TooLargeError,
    UploadFailedError,
)
from ..utils.storage import StorageError, build_storage
from . import channel_directory

logger = logging.getLogger(__name__)

KEY_PREFIX = "chat-images"


@dataclass(frozen=True)
class UploadResult:
    url: str
    key: str
    content_type: str
    size: int


def _normalize_content_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";")[0].strip().lower()


def validate(payload: bytes, content_type: Optional[str], max_bytes: Optional[int] = None) -> str:
    """Check type and size before anything touches storage; return the clean type."""
    ct = _normalize_content_type(content_type)
    if not ct.startswith("image/"):
        raise InvalidTypeError("Only image attachments are supported", {"file": "invalid_type"})
    if not payload:
        raise ChatValidationError("Attachment is empty", {"file": "empty"})
    limit = settings.ATTACHMENT_MAX_BYTES if max_bytes is None else max_bytes
    if len(payload) > limit:
        raise TooLargeError(
            f"Image must be smaller than {limit / (1024 * 1024):g}MB",
            {"file": "too_large"},
        )
    return ct


def build_key(booking_id: int, sender_id: int, ext: str) -> str:
    """Namespace objects by conversation then sender; the uuid keeps keys unique."""
    stamp = int(time.time() * 1000)
    return f"{KEY_PREFIX}/{int(booking_id)}/{int(sender_id)}/{stamp}-{uuid.uuid4().hex}{ext}"


def _require_sender(db: Session, booking_id: int, sender_id: int) -> None:
    conversation = channel_directory.resolve_conversation(db, booking_id, sender_id)
    channel_directory.require_open(conversation)


async def upload(
    booking_id: int,
    sender_id: int,
    payload: bytes,
    content_type: Optional[str],
    filename: Optional[str] = None,
    db: Optional[Session] = None,
    storage=None,
    timeout: Optional[float] = None,
) -> UploadResult:
    """Store ``payload`` and return its public URL.

    When a session is supplied the sender must be a participant of an open
    conversation. Storage errors and timeouts surface as
    ``UploadFailedError`` so the caller can offer a retry.
    """
    if db is not None:
        await run_in_threadpool(_require_sender, db, booking_id, sender_id)

    ct = validate(payload, content_type)
    key = build_key(booking_id, sender_id, guess_extension(filename, ct))
    backend = storage or build_storage()
    wait = settings.ATTACHMENT_UPLOAD_TIMEOUT if timeout is None else timeout

    try:
        url = await asyncio.wait_for(asyncio.to_thread(backend.put, key, payload, ct), timeout=wait)
    except asyncio.TimeoutError as exc:
        logger.warning("Attachment upload timed out key=%s after %.1fs", key, wait)
        raise UploadFailedError("Attachment upload timed out", {"file": "timeout"}) from exc
    except StorageError as exc:
        logger.warning("Attachment upload failed key=%s: %s", key, exc)
        raise UploadFailedError("Attachment upload failed", {"file": "upload_failed"}) from exc

    logger.info(
        "Attachment stored booking_id=%s sender_id=%s size=%s", booking_id, sender_id, len(payload)
    )
    return UploadResult(url=url, key=key, content_type=ct, size=len(payload))
