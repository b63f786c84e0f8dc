import logging
from typing import Any, Optional

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from ..core.config import REDIS_URL

logger = logging.getLogger(__name__)

_redis_client: Optional[Any] = None


class _AsyncNullRedis:
    """Stand-in used when no Redis URL is configured.

    It has no ``publish`` so the realtime bus reports itself disabled.
    """

    async def get(self, *args: Any, **kwargs: Any) -> None:  # pragma: no cover - no-op
        return None

    async def aclose(self) -> None:  # pragma: no cover - no-op
        return None


def _build_client() -> Any:
    url = (REDIS_URL or "").strip()
    if not url or not url.lower().startswith(("redis://", "rediss://")):
        return _AsyncNullRedis()
    try:
        return aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=5,
            health_check_interval=30,
            retry_on_timeout=True,
        )
    except (RedisError, ValueError) as exc:
        logger.warning("Redis client unavailable (%s); realtime bus disabled", exc)
        return _AsyncNullRedis()


def get_redis() -> Any:
    global _redis_client
    if _redis_client is None:
        _redis_client = _build_client()
    return _redis_client


def set_redis(client: Any) -> None:
    """Swap the shared client (tests inject ``fakeredis.aioredis.FakeRedis``)."""
    global _redis_client
    _redis_client = client


async def close_redis_client() -> None:
    """Close the shared client if one was created."""
    global _redis_client
    if _redis_client is not None:
        try:
            await _redis_client.aclose()
        except RedisError as exc:  # pragma: no cover - best effort
            logger.warning("Error closing Redis client: %s", exc)
        finally:
            _redis_client = None


__all__ = ["get_redis", "set_redis", "close_redis_client"]
