"""Transports a :class:`~booking_chat.client.session.ConversationSession` talks to.

``LocalChatBackend`` runs the store and hub in-process (same event loop as the
server, used by workers and tests). ``HttpChatBackend`` talks to the REST API
with httpx; it has no push channel, so its ``subscribe`` raises
``DeliveryUnavailableError`` and sessions fall back to polling.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from .. import crud, schemas
from ..database import SessionLocal
from ..realtime import hub as realtime
from ..realtime.hub import Hub, Subscription
from ..services import attachment_uploader, channel_directory
from ..utils.errors import (
    AccessDeniedError,
    ChatError,
    ChatValidationError,
    DeliveryUnavailableError,
    ForbiddenError,
    InvalidTypeError,
    NotFoundError,
    StoreUnavailableError,
    TooLargeError,
    UploadFailedError,
)

logger = logging.getLogger(__name__)


class ChatBackend:
    """Operations a conversation view needs, all from one user's perspective."""

    user_id: int

    async def resolve(self, booking_id: int) -> schemas.ConversationResponse:
        raise NotImplementedError

    async def fetch_history(
        self, booking_id: int, after_id: Optional[int] = None, ids: Optional[List[int]] = None
    ) -> List[schemas.MessageResponse]:
        raise NotImplementedError

    async def append(
        self,
        booking_id: int,
        body: Optional[str] = None,
        attachment_url: Optional[str] = None,
        mime_hint: Optional[str] = None,
    ) -> schemas.MessageResponse:
        raise NotImplementedError

    async def mark_read(self, booking_id: int) -> List[schemas.MessageResponse]:
        raise NotImplementedError

    async def delete_own(self, booking_id: int, message_id: int) -> None:
        raise NotImplementedError

    async def delete_conversation(self, booking_id: int) -> int:
        raise NotImplementedError

    async def upload(
        self, booking_id: int, payload: bytes, content_type: str, filename: Optional[str] = None
    ) -> schemas.AttachmentOut:
        raise NotImplementedError

    async def send_typing(self, booking_id: int) -> None:
        raise NotImplementedError

    async def subscribe(self, booking_id: int) -> Tuple[Subscription, Subscription]:
        """Message and typing feeds for one conversation."""
        raise DeliveryUnavailableError("Push delivery is not available", {})

    async def subscribe_user(self) -> Subscription:
        raise DeliveryUnavailableError("Push delivery is not available", {})

    async def global_unread_count(self) -> int:
        raise NotImplementedError

    async def per_conversation_unread_counts(self) -> Dict[int, int]:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


def _to_response(msg) -> schemas.MessageResponse:
    return schemas.MessageResponse.model_validate(msg)


class LocalChatBackend(ChatBackend):
    def __init__(
        self,
        user_id: int,
        session_factory: Callable[[], Session] = SessionLocal,
        target_hub: Optional[Hub] = None,
    ) -> None:
        self.user_id = int(user_id)
        self.session_factory = session_factory
        self.hub = target_hub or realtime.hub

    def _call_sync(self, fn, *args, **kwargs):
        db = self.session_factory()
        try:
            return fn(db, *args, **kwargs)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.warning("Chat store call %s failed: %s", getattr(fn, "__name__", fn), exc)
            raise StoreUnavailableError("Chat store unavailable", {}) from exc
        finally:
            db.close()

    async def _call(self, fn, *args, **kwargs):
        return await run_in_threadpool(self._call_sync, fn, *args, **kwargs)

    async def resolve(self, booking_id):
        conversation = await self._call(
            channel_directory.resolve_conversation, booking_id, self.user_id
        )
        return schemas.ConversationResponse.model_validate(conversation)

    async def fetch_history(self, booking_id, after_id=None, ids=None):
        def _fetch(db):
            rows = crud.crud_message.fetch_history(
                db, booking_id, self.user_id, after_id=after_id, ids=ids
            )
            return [_to_response(m) for m in rows]

        return await self._call(_fetch)

    async def append(self, booking_id, body=None, attachment_url=None, mime_hint=None):
        msg = await self._call(
            crud.crud_message.append,
            booking_id,
            self.user_id,
            body=body,
            attachment_url=attachment_url,
            mime_hint=mime_hint,
        )
        await realtime.publish_message_created(msg, target=self.hub)
        return _to_response(msg)

    async def mark_read(self, booking_id):
        updated = await self._call(crud.crud_message.mark_read, booking_id, self.user_id)
        await realtime.publish_messages_read(booking_id, self.user_id, updated, target=self.hub)
        return [_to_response(m) for m in updated]

    async def delete_own(self, booking_id, message_id):
        def _delete(db):
            msg = crud.crud_message.get_message(db, message_id)
            if msg is None or msg.booking_id != booking_id:
                raise NotFoundError("Message not found", {"message_id": "not_found"})
            return crud.crud_message.delete_own(db, message_id, self.user_id)

        deleted = await self._call(_delete)
        await realtime.publish_message_deleted(deleted, target=self.hub)

    async def delete_conversation(self, booking_id):
        def _clear(db):
            conversation = channel_directory.resolve_conversation(db, booking_id, self.user_id)
            return conversation, crud.crud_message.delete_conversation(db, booking_id, self.user_id)

        conversation, deleted = await self._call(_clear)
        await realtime.publish_conversation_cleared(
            conversation, self.user_id, deleted, target=self.hub
        )
        return deleted

    async def upload(self, booking_id, payload, content_type, filename=None):
        def _check(db):
            conversation = channel_directory.resolve_conversation(db, booking_id, self.user_id)
            channel_directory.require_open(conversation)

        await self._call(_check)
        result = await attachment_uploader.upload(
            booking_id, self.user_id, payload, content_type, filename=filename
        )
        return schemas.AttachmentOut.model_validate(result)

    async def send_typing(self, booking_id):
        def _check(db):
            conversation = channel_directory.resolve_conversation(db, booking_id, self.user_id)
            channel_directory.require_open(conversation)

        await self._call(_check)
        await realtime.publish_typing(booking_id, self.user_id, target=self.hub)

    async def subscribe(self, booking_id):
        await self._call(channel_directory.resolve_conversation, booking_id, self.user_id)
        return realtime.open_conversation_feeds(booking_id, target=self.hub)

    async def subscribe_user(self):
        return realtime.open_user_feed(self.user_id, target=self.hub)

    async def global_unread_count(self):
        return await self._call(crud.crud_message.global_unread_count, self.user_id)

    async def per_conversation_unread_counts(self):
        return await self._call(crud.crud_message.per_conversation_unread_counts, self.user_id)


# ─── HTTP ──────────────────────────────────────────────────────────────────────

_ERRORS_BY_STATUS = {
    404: NotFoundError,
    403: ForbiddenError,
    413: TooLargeError,
    415: InvalidTypeError,
    422: ChatValidationError,
}


def _error_from_response(response: httpx.Response, default: type = ChatError) -> ChatError:
    message = response.reason_phrase or "Request failed"
    field_errors: Dict[str, str] = {}
    try:
        detail = response.json().get("detail")
    except ValueError:
        detail = None
    if isinstance(detail, dict):
        message = str(detail.get("message") or message)
        field_errors = {str(k): str(v) for k, v in (detail.get("field_errors") or {}).items()}
    elif isinstance(detail, str):
        message = detail
    if response.status_code == 401:
        return AccessDeniedError(message, field_errors)
    cls = _ERRORS_BY_STATUS.get(response.status_code, default)
    return cls(message, field_errors)


class HttpChatBackend(ChatBackend):
    """REST client for the chat API; polling only."""

    def __init__(
        self,
        base_url: str,
        token: str,
        user_id: int,
        api_prefix: str = "/api/v1",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ) -> None:
        self.user_id = int(user_id)
        self.api_prefix = api_prefix.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {token}"},
            transport=transport,
            timeout=httpx.Timeout(timeout, connect=5.0),
        )

    def _url(self, path: str) -> str:
        return f"{self.api_prefix}{path}"

    async def _request(self, method: str, path: str, default_error: type = ChatError, **kwargs: Any):
        try:
            response = await self._client.request(method, self._url(path), **kwargs)
        except httpx.TransportError as exc:
            logger.warning("Chat API %s %s failed: %s", method, path, exc)
            raise default_error("Chat service unreachable", {}) from exc
        if response.status_code >= 400:
            raise _error_from_response(response, default_error)
        return response

    async def resolve(self, booking_id):
        response = await self._request("GET", f"/bookings/{booking_id}/conversation")
        return schemas.ConversationResponse.model_validate(response.json())

    async def fetch_history(self, booking_id, after_id=None, ids=None):
        params: Dict[str, Any] = {}
        if after_id is not None:
            params["after_id"] = after_id
        if ids is not None:
            params["ids"] = [int(i) for i in ids]
        response = await self._request("GET", f"/bookings/{booking_id}/messages", params=params or None)
        return schemas.MessageListResponse.model_validate(response.json()).items

    async def append(self, booking_id, body=None, attachment_url=None, mime_hint=None):
        payload: Dict[str, Any] = {"content": body}
        if attachment_url is not None:
            payload = {"attachment_url": attachment_url, "mime_hint": mime_hint}
        response = await self._request("POST", f"/bookings/{booking_id}/messages", json=payload)
        return schemas.MessageResponse.model_validate(response.json())

    async def mark_read(self, booking_id):
        response = await self._request("PUT", f"/bookings/{booking_id}/messages/read")
        return schemas.MarkReadResponse.model_validate(response.json()).messages

    async def delete_own(self, booking_id, message_id):
        await self._request("DELETE", f"/bookings/{booking_id}/messages/{message_id}")

    async def delete_conversation(self, booking_id):
        response = await self._request(
            "DELETE", f"/bookings/{booking_id}/messages", params={"confirm": "true"}
        )
        return int(response.json().get("deleted", 0))

    async def upload(self, booking_id, payload, content_type, filename=None):
        files = {"file": (filename or "upload", payload, content_type)}
        response = await self._request(
            "POST",
            f"/bookings/{booking_id}/attachments",
            default_error=UploadFailedError,
            files=files,
        )
        return schemas.AttachmentOut.model_validate(response.json())

    async def send_typing(self, booking_id):
        await self._request("POST", f"/bookings/{booking_id}/typing")

    async def global_unread_count(self):
        response = await self._request("GET", "/messages/unread")
        return int(response.json().get("total", 0))

    async def per_conversation_unread_counts(self):
        response = await self._request("GET", "/messages/unread/by-conversation")
        counts = response.json().get("counts") or {}
        return {int(k): int(v) for k, v in counts.items()}

    async def aclose(self):
        await self._client.aclose()
