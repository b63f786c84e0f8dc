"""Stateful view over one open conversation.

A session loads history, marks it read, subscribes to the message and typing
feeds and keeps an in-memory, id-merged copy of the thread. It owns every
timer, task and subscription it creates and releases them in :meth:`close`.
When push delivery cannot be established it polls for new rows instead.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

from .. import schemas
from ..core.config import settings
from ..realtime import hub as realtime
from ..realtime.hub import Envelope, Subscription
from ..services.attachment_uploader import validate as validate_attachment
from ..utils.errors import ChatError, ChatValidationError, DeliveryUnavailableError
from .backend import ChatBackend

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    LOADING = "loading"
    READY = "ready"
    SENDING = "sending"
    UPLOADING = "uploading"
    CLOSED = "closed"


class TypingIndicator:
    """Who is typing right now, each entry expiring ``decay`` seconds after its last signal."""

    def __init__(self, decay: Optional[float] = None, on_change: Optional[Callable[[Set[int]], None]] = None) -> None:
        self.decay = settings.TYPING_DECAY_SECONDS if decay is None else decay
        self.on_change = on_change
        self._timers: Dict[int, asyncio.TimerHandle] = {}

    @property
    def typing_users(self) -> Set[int]:
        return set(self._timers)

    def is_typing(self, user_id: Optional[int] = None) -> bool:
        if user_id is None:
            return bool(self._timers)
        return int(user_id) in self._timers

    def signal(self, user_id: int) -> None:
        uid = int(user_id)
        was_typing = uid in self._timers
        previous = self._timers.pop(uid, None)
        if previous is not None:
            previous.cancel()
        loop = asyncio.get_running_loop()
        self._timers[uid] = loop.call_later(self.decay, self._expire, uid)
        if not was_typing:
            self._notify()

    def _expire(self, user_id: int) -> None:
        if self._timers.pop(user_id, None) is not None:
            self._notify()

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self.typing_users)

    def close(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()


@dataclass
class PendingAttachment:
    payload: bytes
    content_type: str
    filename: Optional[str] = None
    # Set once stored, so a failed send can be retried without uploading again
    url: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.payload)


class ConversationSession:
    def __init__(
        self,
        backend: ChatBackend,
        booking_id: int,
        *,
        typing_decay: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> None:
        self.backend = backend
        self.booking_id = int(booking_id)
        self.viewer_id = int(backend.user_id)
        self.poll_interval = settings.POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval

        self.state = SessionState.LOADING
        self.conversation: Optional[schemas.ConversationResponse] = None
        self.messages: List[schemas.MessageResponse] = []
        self.draft = ""
        self.at_latest = True
        self.has_new_message_hint = False
        self.last_error: Optional[Exception] = None
        self.pending_attachment: Optional[PendingAttachment] = None
        self.polling = False
        self.typing = TypingIndicator(typing_decay)

        self._subscriptions: List[Subscription] = []
        self._tasks: List[asyncio.Task] = []
        self._background: Set[asyncio.Task] = set()

    # ── lifecycle ──────────────────────────────────────────────────────────

    async def open(self) -> "ConversationSession":
        """Resolve, load, mark read, subscribe. Errors propagate to the caller."""
        self.state = SessionState.LOADING
        self.conversation = await self.backend.resolve(self.booking_id)
        self._merge(await self.backend.fetch_history(self.booking_id))
        await self.mark_read()
        try:
            message_sub, typing_sub = await self.backend.subscribe(self.booking_id)
        except DeliveryUnavailableError as exc:
            logger.info("Push unavailable for booking_id=%s (%s); polling", self.booking_id, exc)
            self.polling = True
            self._tasks.append(asyncio.create_task(self._poll_loop()))
        else:
            self._subscriptions = [message_sub, typing_sub]
            self._tasks.append(asyncio.create_task(self._listen(message_sub)))
            self._tasks.append(asyncio.create_task(self._listen(typing_sub)))
            # Rows sent between the history load and the subscription
            await self.refresh()
        if self.state == SessionState.LOADING:
            self.state = SessionState.READY
        return self

    async def close(self) -> None:
        """Drop subscriptions, timers and polling.

        In-flight sends and uploads are left alone and still complete.
        """
        if self.state == SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        for sub in self._subscriptions:
            sub.close()
        self._subscriptions = []
        self.typing.close()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def __aenter__(self) -> "ConversationSession":
        return await self.open()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self.state == SessionState.CLOSED

    @property
    def is_open_for_sending(self) -> bool:
        return bool(self.conversation and self.conversation.is_open)

    # ── inbound ────────────────────────────────────────────────────────────

    def _merge(self, rows: List[schemas.MessageResponse]) -> None:
        """Upsert by id and keep (created_at, id) order."""
        if not rows:
            return
        by_id = {m.id: m for m in self.messages}
        for row in rows:
            by_id[row.id] = row
        self.messages = sorted(by_id.values(), key=lambda m: (m.created_at, m.id))

    def _remove(self, message_id: int) -> None:
        self.messages = [m for m in self.messages if m.id != message_id]

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _on_inbound(self, row: schemas.MessageResponse) -> None:
        if row.receiver_id != self.viewer_id or row.is_read:
            return
        if self.at_latest:
            self._spawn(self._auto_read())
        else:
            self.has_new_message_hint = True

    async def _auto_read(self) -> None:
        try:
            await self.mark_read()
        except ChatError as exc:
            # Stays unread; the next mark_read picks it up
            logger.warning("Auto mark-read failed booking_id=%s: %s", self.booking_id, exc)

    def apply(self, env: Envelope) -> None:
        """Fold one pushed envelope into local state."""
        payload = env.payload or {}
        if env.type == realtime.MESSAGE_CREATED:
            row = schemas.MessageResponse.model_validate(payload.get("message") or {})
            known = any(m.id == row.id for m in self.messages)
            self._merge([row])
            if not known:
                self._on_inbound(row)
        elif env.type == realtime.MESSAGE_UPDATED:
            self._merge([schemas.MessageResponse.model_validate(m) for m in payload.get("messages") or []])
        elif env.type == realtime.MESSAGE_DELETED:
            self._remove(int(payload.get("id", 0)))
        elif env.type == realtime.CONVERSATION_CLEARED:
            self.messages = []
            self.has_new_message_hint = False
        elif env.type == realtime.TYPING:
            uid = int(payload.get("user_id", 0))
            if uid and uid != self.viewer_id:
                self.typing.signal(uid)

    async def _listen(self, sub: Subscription) -> None:
        async for env in sub:
            try:
                self.apply(env)
            except ValueError as exc:
                logger.warning("Dropping malformed envelope %s: %s", env.type, exc)

    async def refresh(self) -> List[schemas.MessageResponse]:
        """Fetch rows newer than the newest one held and merge them."""
        after_id = max((m.id for m in self.messages), default=None)
        rows = await self.backend.fetch_history(self.booking_id, after_id=after_id)
        known = {m.id for m in self.messages}
        self._merge(rows)
        for row in rows:
            if row.id not in known:
                self._on_inbound(row)
        if self.polling:
            await self._refresh_receipts()
        return rows

    async def _refresh_receipts(self) -> None:
        """Re-read sent rows the peer has not read yet; without push nothing else flips them."""
        pending = [m.id for m in self.messages if m.sender_id == self.viewer_id and not m.is_read]
        if pending:
            self._merge(await self.backend.fetch_history(self.booking_id, ids=pending))

    async def _poll_loop(self) -> None:
        while self.state != SessionState.CLOSED:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.refresh()
            except ChatError as exc:
                logger.warning("Poll failed booking_id=%s: %s", self.booking_id, exc)
            except Exception:
                # Keep polling; the next tick retries
                logger.exception("Poll crashed booking_id=%s", self.booking_id)

    # ── read state ─────────────────────────────────────────────────────────

    @property
    def unread_count(self) -> int:
        return sum(1 for m in self.messages if m.receiver_id == self.viewer_id and not m.is_read)

    async def mark_read(self) -> int:
        # Rows that show up while the request is in flight were not covered by it
        horizon = max((m.id for m in self.messages), default=0)
        updated = await self.backend.mark_read(self.booking_id)
        self._merge(updated)
        flipped = {m.id for m in updated}
        self.messages = [
            m.model_copy(update={"is_read": True})
            if m.receiver_id == self.viewer_id
            and not m.is_read
            and (m.id in flipped or m.id <= horizon)
            else m
            for m in self.messages
        ]
        return len(updated)

    async def set_viewport(self, at_latest: bool) -> None:
        """Record whether the newest message is on screen; reaching it reads the thread."""
        self.at_latest = bool(at_latest)
        if self.at_latest:
            self.has_new_message_hint = False
            if self.unread_count:
                await self.mark_read()

    # ── outbound ───────────────────────────────────────────────────────────

    def on_input_changed(self, text: str) -> None:
        self.draft = text
        if self.state != SessionState.READY or not self.is_open_for_sending:
            return
        self._spawn(self._send_typing())

    async def _send_typing(self) -> None:
        try:
            await self.backend.send_typing(self.booking_id)
        except ChatError as exc:
            logger.debug("Typing signal dropped booking_id=%s: %s", self.booking_id, exc)

    def _require_ready(self) -> None:
        if self.state != SessionState.READY:
            raise ChatValidationError(f"Session is {self.state.value}", {"state": self.state.value})

    async def send(self) -> schemas.MessageResponse:
        """Send the draft; on failure the text goes back into the draft."""
        self._require_ready()
        text = self.draft
        if not text.strip():
            raise ChatValidationError("Message content cannot be empty", {"content": "required"})
        self.state = SessionState.SENDING
        self.draft = ""
        try:
            msg = await self.backend.append(self.booking_id, body=text)
        except Exception as exc:
            # Keep anything typed while the request was in flight after the restored text
            self.draft = text + self.draft
            self.last_error = exc
            raise
        finally:
            if self.state == SessionState.SENDING:
                self.state = SessionState.READY
        self.last_error = None
        self._merge([msg])
        return msg

    def select_attachment(self, payload: bytes, content_type: str, filename: Optional[str] = None) -> PendingAttachment:
        """Hold an image for preview; nothing is stored until :meth:`confirm_attachment`."""
        self._require_ready()
        clean_type = validate_attachment(payload, content_type)
        self.pending_attachment = PendingAttachment(payload, clean_type, filename)
        self.state = SessionState.UPLOADING
        return self.pending_attachment

    def cancel_attachment(self) -> None:
        self.pending_attachment = None
        if self.state == SessionState.UPLOADING:
            self.state = SessionState.READY

    async def confirm_attachment(self) -> schemas.MessageResponse:
        """Upload the held image then send its URL.

        On failure the attachment stays selected so calling again retries.
        """
        pending = self.pending_attachment
        if pending is None or self.state != SessionState.UPLOADING:
            raise ChatValidationError("No attachment selected", {"file": "required"})
        try:
            if pending.url is None:
                stored = await self.backend.upload(
                    self.booking_id, pending.payload, pending.content_type, pending.filename
                )
                pending.url = stored.url
            msg = await self.backend.append(
                self.booking_id, attachment_url=pending.url, mime_hint=pending.content_type
            )
        except Exception as exc:
            self.last_error = exc
            raise
        self.last_error = None
        self.pending_attachment = None
        if self.state == SessionState.UPLOADING:
            self.state = SessionState.READY
        self._merge([msg])
        return msg

    async def delete_message(self, message_id: int, confirmed: bool = False) -> None:
        if not confirmed:
            raise ChatValidationError("Deleting a message needs confirmation", {"confirm": "required"})
        await self.backend.delete_own(self.booking_id, message_id)
        self._remove(message_id)

    async def clear_conversation(self, confirmed: bool = False) -> int:
        if not confirmed:
            raise ChatValidationError("Deleting a conversation needs confirmation", {"confirm": "required"})
        deleted = await self.backend.delete_conversation(self.booking_id)
        self.messages = []
        self.has_new_message_hint = False
        return deleted
