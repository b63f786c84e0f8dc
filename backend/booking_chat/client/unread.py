"""Dashboard unread badge.

Keeps the last known totals and refreshes them whenever the user feed says
something changed. A failed refresh keeps the previous value and retries with
backoff instead of dropping the badge to zero.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Optional

from ..core.config import settings
from ..realtime.hub import Subscription
from ..utils.errors import ChatError, DeliveryUnavailableError
from .backend import ChatBackend

logger = logging.getLogger(__name__)


class UnreadCounter:
    def __init__(
        self,
        backend: ChatBackend,
        retry_seconds: Optional[float] = None,
        max_retry_seconds: float = 30.0,
        poll_interval: Optional[float] = None,
        on_change: Optional[Callable[[int], None]] = None,
    ) -> None:
        self.backend = backend
        self.retry_seconds = settings.UNREAD_RETRY_SECONDS if retry_seconds is None else retry_seconds
        self.max_retry_seconds = max_retry_seconds
        self.poll_interval = settings.POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self.on_change = on_change

        self.total = 0
        self.by_conversation: Dict[int, int] = {}
        self.last_error: Optional[Exception] = None
        self.failures = 0
        self.polling = False
        self.closed = False

        self._sub: Optional[Subscription] = None
        self._task: Optional[asyncio.Task] = None
        self._retry: Optional[asyncio.TimerHandle] = None

    def _next_delay(self) -> float:
        return min(self.retry_seconds * (2 ** max(self.failures - 1, 0)), self.max_retry_seconds)

    def _schedule_retry(self) -> None:
        if self.closed or self._retry is not None:
            return
        delay = self._next_delay()
        loop = asyncio.get_running_loop()
        self._retry = loop.call_later(delay, self._fire_retry)
        logger.info("Unread refresh retry in %.1fs (failures=%d)", delay, self.failures)

    def _fire_retry(self) -> None:
        self._retry = None
        if not self.closed:
            asyncio.ensure_future(self._guarded_refresh())

    async def refresh(self) -> int:
        """Recompute the totals; returns the value now shown."""
        try:
            counts = await self.backend.per_conversation_unread_counts()
        except ChatError as exc:
            logger.warning("Unread refresh failed, keeping %d: %s", self.total, exc)
            return self._failed(exc)
        self.failures = 0
        self.last_error = None
        previous = self.total
        self.by_conversation = {int(k): int(v) for k, v in counts.items() if int(v) > 0}
        self.total = sum(self.by_conversation.values())
        if self.on_change is not None and self.total != previous:
            self.on_change(self.total)
        return self.total

    def _failed(self, exc: Exception) -> int:
        self.failures += 1
        self.last_error = exc
        self._schedule_retry()
        return self.total

    async def _guarded_refresh(self) -> int:
        """Refresh from a background task; nothing may escape and stop the badge."""
        try:
            return await self.refresh()
        except Exception as exc:
            logger.exception("Unread refresh crashed, keeping %d", self.total)
            return self._failed(exc)

    async def start(self) -> "UnreadCounter":
        await self.refresh()
        try:
            self._sub = await self.backend.subscribe_user()
        except DeliveryUnavailableError:
            self.polling = True
            self._task = asyncio.create_task(self._poll_loop())
        else:
            self._task = asyncio.create_task(self._listen(self._sub))
        return self

    async def _listen(self, sub: Subscription) -> None:
        async for _env in sub:
            await self._guarded_refresh()

    async def _poll_loop(self) -> None:
        while not self.closed:
            await asyncio.sleep(self.poll_interval)
            await self._guarded_refresh()

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._retry is not None:
            self._retry.cancel()
            self._retry = None
        if self._sub is not None:
            self._sub.close()
            self._sub = None
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
