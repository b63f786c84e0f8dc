"""In-process delivery bus.

Topics:

- ``conversation:{booking_id}``: ``message.created``, ``message.updated``,
  ``message.deleted`` and ``conversation.cleared``
- ``typing:{booking_id}``: ephemeral ``typing`` signals, never stored
- ``user:{user_id}``: ``messages.changed``, the "recompute your counts" nudge
  for dashboards

Every subscriber owns one FIFO queue, so a subscriber sees the events of one
topic in the order they were published. Subscriptions must be closed by their
owner; ``close`` is idempotent. When the Redis bus is enabled, events are also
published to ``ws-topic:<topic>`` and envelopes from other instances are
re-delivered locally.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .. import models
from ..schemas.message import MessageResponse
from . import bus

logger = logging.getLogger(__name__)

INSTANCE_ID = os.getenv("INSTANCE_ID", "inst-" + os.urandom(4).hex())

MESSAGE_CREATED = "message.created"
MESSAGE_UPDATED = "message.updated"
MESSAGE_DELETED = "message.deleted"
CONVERSATION_CLEARED = "conversation.cleared"
TYPING = "typing"
MESSAGES_CHANGED = "messages.changed"


def conversation_topic(booking_id: int) -> str:
    return f"conversation:{int(booking_id)}"


def typing_topic(booking_id: int) -> str:
    return f"typing:{int(booking_id)}"


def user_topic(user_id: int) -> str:
    return f"user:{int(user_id)}"


@dataclass
class Envelope:
    v: int = 1
    type: str = ""
    topic: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def from_raw(raw: Any) -> "Envelope":
        if isinstance(raw, dict):
            return Envelope(
                v=int(raw.get("v", 1)),
                type=str(raw.get("type") or ""),
                topic=(str(raw["topic"]) if raw.get("topic") is not None else None),
                payload=(raw.get("payload") if isinstance(raw.get("payload"), dict) else {}),
            )
        return Envelope()

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"v": self.v, "type": self.type or "message"}
        if self.topic is not None:
            data["topic"] = self.topic
        data["payload"] = self.payload
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), default=str)


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


class Subscription:
    """One subscriber's ordered view of a topic."""

    def __init__(self, hub: "Hub", topic: str) -> None:
        self.hub = hub
        self.topic = topic
        self.closed = False
        self._queue: asyncio.Queue[Optional[Envelope]] = asyncio.Queue()
        # Loop of the consumer; publishers on other threads hand off through it
        self._loop: Optional[asyncio.AbstractEventLoop] = _running_loop()

    def _put(self, item: Optional[Envelope]) -> None:
        loop = self._loop
        if loop is not None and not loop.is_closed() and _running_loop() is not loop:
            loop.call_soon_threadsafe(self._queue.put_nowait, item)
        else:
            self._queue.put_nowait(item)

    def deliver(self, env: Envelope) -> bool:
        if self.closed:
            return False
        self._put(env)
        return True

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self, timeout: Optional[float] = None) -> Optional[Envelope]:
        """Next envelope, or None once the subscription is closed.

        Raises ``asyncio.TimeoutError`` if ``timeout`` elapses first.
        """
        if self.closed and self._queue.empty():
            return None
        self._loop = asyncio.get_running_loop()
        if timeout is None:
            env = await self._queue.get()
        else:
            env = await asyncio.wait_for(self._queue.get(), timeout)
        return env

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.hub._remove(self)
        # Wake a consumer blocked in get()
        self._put(None)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Envelope:
        env = await self.get()
        if env is None:
            raise StopAsyncIteration
        return env

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<Subscription topic={self.topic} closed={self.closed}>"


class Hub:
    def __init__(self, instance_id: str = INSTANCE_ID) -> None:
        self.instance_id = instance_id
        self._subs: Dict[str, Set[Subscription]] = {}

    def subscribe(self, topic: str) -> Subscription:
        sub = Subscription(self, topic)
        self._subs.setdefault(topic, set()).add(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        subs = self._subs.get(sub.topic)
        if not subs:
            return
        subs.discard(sub)
        if not subs:
            del self._subs[sub.topic]

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        if topic is not None:
            return len(self._subs.get(topic, ()))
        return sum(len(s) for s in self._subs.values())

    def deliver_local(self, topic: str, env: Envelope) -> int:
        if env.topic is None:
            env.topic = topic
        delivered = 0
        for sub in list(self._subs.get(topic, ())):
            if sub.deliver(env):
                delivered += 1
        return delivered

    async def publish(self, topic: str, env: Envelope, publish: bool = True) -> int:
        """Fan out to local subscribers, then mirror onto the Redis bus."""
        delivered = self.deliver_local(topic, env)
        logger.debug("hub.publish topic=%s type=%s local=%d", topic, env.type, delivered)
        if publish and bus.bus_enabled():
            data = env.to_dict()
            data["origin"] = self.instance_id
            await bus.publish_topic(topic, data)
        return delivered

    async def dispatch_from_bus(self, topic: str, data: Dict[str, Any]) -> None:
        if data.get("origin") == self.instance_id:
            return
        self.deliver_local(topic, Envelope.from_raw(data))

    async def start_bus(self) -> Optional[asyncio.Task]:
        return await bus.start_pattern_consumer(self.dispatch_from_bus)

    def reset(self) -> None:
        for subs in list(self._subs.values()):
            for sub in list(subs):
                sub.close()
        self._subs.clear()


hub = Hub()


# ─── Subscribing ───────────────────────────────────────────────────────────────


def open_conversation_feeds(
    booking_id: int, target: Optional[Hub] = None
) -> Tuple[Subscription, Subscription]:
    """Subscribe to the message and typing topics; callers authorize first."""
    h = target or hub
    return h.subscribe(conversation_topic(booking_id)), h.subscribe(typing_topic(booking_id))


def open_user_feed(user_id: int, target: Optional[Hub] = None) -> Subscription:
    return (target or hub).subscribe(user_topic(user_id))


# ─── Publishing ────────────────────────────────────────────────────────────────


def message_payload(msg: models.Message) -> Dict[str, Any]:
    return MessageResponse.model_validate(msg).model_dump(mode="json")


async def _changed(h: Hub, user_ids: Iterable[int], reason: str, booking_id: int) -> None:
    for uid in sorted({int(u) for u in user_ids}):
        await h.publish(
            user_topic(uid),
            Envelope(type=MESSAGES_CHANGED, payload={"reason": reason, "booking_id": int(booking_id)}),
        )


async def publish_message_created(msg: models.Message, target: Optional[Hub] = None) -> None:
    h = target or hub
    await h.publish(
        conversation_topic(msg.booking_id),
        Envelope(type=MESSAGE_CREATED, payload={"message": message_payload(msg)}),
    )
    await _changed(h, [msg.receiver_id], "created", msg.booking_id)


async def publish_messages_read(
    booking_id: int, reader_id: int, messages: List[models.Message], target: Optional[Hub] = None
) -> None:
    if not messages:
        return
    h = target or hub
    await h.publish(
        conversation_topic(booking_id),
        Envelope(
            type=MESSAGE_UPDATED,
            payload={"messages": [message_payload(m) for m in messages], "reader_id": int(reader_id)},
        ),
    )
    await _changed(h, [reader_id], "read", booking_id)


async def publish_message_deleted(msg: models.Message, target: Optional[Hub] = None) -> None:
    h = target or hub
    await h.publish(
        conversation_topic(msg.booking_id),
        Envelope(type=MESSAGE_DELETED, payload={"id": int(msg.id), "booking_id": int(msg.booking_id)}),
    )
    await _changed(h, [msg.sender_id, msg.receiver_id], "deleted", msg.booking_id)


async def publish_conversation_cleared(
    conversation: Any,
    by_user_id: int,
    deleted: int,
    target: Optional[Hub] = None,
) -> None:
    h = target or hub
    await h.publish(
        conversation_topic(conversation.conversation_id),
        Envelope(
            type=CONVERSATION_CLEARED,
            payload={
                "booking_id": conversation.conversation_id,
                "by_user_id": int(by_user_id),
                "deleted": int(deleted),
            },
        ),
    )
    await _changed(h, conversation.participants, "cleared", conversation.conversation_id)


async def publish_typing(booking_id: int, user_id: int, target: Optional[Hub] = None) -> None:
    await (target or hub).publish(
        typing_topic(booking_id),
        Envelope(type=TYPING, payload={"user_id": int(user_id), "booking_id": int(booking_id)}),
    )


__all__ = [
    "Envelope",
    "Hub",
    "Subscription",
    "hub",
    "conversation_topic",
    "typing_topic",
    "user_topic",
    "open_conversation_feeds",
    "open_user_feed",
    "publish_message_created",
    "publish_messages_read",
    "publish_message_deleted",
    "publish_conversation_cleared",
    "publish_typing",
]
