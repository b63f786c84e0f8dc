"""Redis pub/sub bridge so hub events reach subscribers on other instances."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

from redis.exceptions import RedisError

from ..core.config import settings
from ..services.redis_client import get_redis

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "ws-topic:"


def bus_enabled() -> bool:
    return bool(settings.WS_BUS_ENABLED) and hasattr(get_redis(), "publish")


async def publish_topic(topic: str, envelope: dict[str, Any] | str) -> None:
    """Publish an envelope to ws-topic:<topic> (JSON string or dict).

    Safe to call even when the bus is disabled; becomes a no-op.
    """
    if not bus_enabled():
        return
    if isinstance(envelope, str):
        data = envelope
    else:
        env = dict(envelope)
        env.setdefault("v", 1)
        env.setdefault("topic", topic)
        data = json.dumps(env, separators=(",", ":"), default=str)
    try:
        await get_redis().publish(f"{CHANNEL_PREFIX}{topic}", data)
    except (RedisError, OSError) as exc:
        # Local subscribers were already served; other instances miss this one
        logger.warning("Bus publish failed topic=%s: %s", topic, exc)


_consumer_task: Optional[asyncio.Task] = None


def _decode(data: Any) -> dict[str, Any]:
    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8")
    if isinstance(data, str):
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            return {"payload": {"raw": data}}
        return payload if isinstance(payload, dict) else {"payload": {"raw": payload}}
    return {}


async def start_pattern_consumer(
    handler: Callable[[str, dict[str, Any]], Awaitable[None]],
    pattern: str = f"{CHANNEL_PREFIX}*",
) -> Optional[asyncio.Task]:
    """Start a background task that PSUBSCRIBEs to a pattern and dispatches JSON payloads.

    Handler receives (topic_without_prefix, envelope_dict). Returns the task,
    or None when the bus is disabled or the subscription failed.
    """
    global _consumer_task
    if not bus_enabled():
        return None
    if _consumer_task is not None and not _consumer_task.done():
        return _consumer_task

    try:
        pubsub = get_redis().pubsub()
        await pubsub.psubscribe(pattern)
    except (RedisError, OSError) as exc:
        logger.warning("Bus consumer could not subscribe to %s: %s", pattern, exc)
        return None

    async def _loop() -> None:
        try:
            async for msg in pubsub.listen():
                if not isinstance(msg, dict) or msg.get("type") != "pmessage":
                    continue
                channel = msg.get("channel")
                if isinstance(channel, (bytes, bytearray)):
                    channel = channel.decode("utf-8")
                topic = str(channel)[len(CHANNEL_PREFIX):] if str(channel).startswith(CHANNEL_PREFIX) else str(channel)
                try:
                    await handler(topic, _decode(msg.get("data")))
                except Exception:
                    # Keep the stream alive for the next envelope
                    logger.exception("Bus handler failed topic=%s", topic)
        finally:
            try:
                await pubsub.aclose()
            except (RedisError, OSError):
                pass

    _consumer_task = asyncio.create_task(_loop())
    return _consumer_task


async def stop_pattern_consumer() -> None:
    global _consumer_task
    task, _consumer_task = _consumer_task, None
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


__all__ = [
    "bus_enabled",
    "publish_topic",
    "start_pattern_consumer",
    "stop_pattern_consumer",
]
