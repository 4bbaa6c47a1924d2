"""Per-provider concurrency limits with a bounded global wait queue.

A request that finds its provider at capacity counts as waiting; once
``queue_size`` requests are waiting across all providers, further ones are
rejected with QueueFullError instead of queuing.

Each provider keeps a single active counter and a FIFO of waiters. A
released slot is handed directly to the oldest waiter, and changing a
limit only changes how many slots may be handed out, so ``active`` never
exceeds the current limit except while draining down after a decrease.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator

from provider_gateway.gateway.errors import QueueFullError

logger = logging.getLogger(__name__)


class ConcurrencyLimiter:
    """Usage:
        async with limiter.slot("openai"):
            result = await adapter.execute(request)
    """

    def __init__(self, queue_size: int = 100, *, enabled: bool = True):
        self.queue_size = queue_size
        self.enabled = enabled
        self._limits: dict[str, int] = {}
        self._active: dict[str, int] = {}
        self._waiters: dict[str, deque[asyncio.Future]] = {}
        self._waiting = 0
        self._rejected = 0

    def configure(self, provider: str, limit: int) -> None:
        """Set (or change) a provider's limit.

        Raising the limit admits queued waiters immediately. Lowering it
        lets in-flight calls finish; new calls wait until ``active`` drops
        below the new limit.
        """
        if self._limits.get(provider) == limit:
            return
        self._limits[provider] = limit
        self._active.setdefault(provider, 0)
        self._waiters.setdefault(provider, deque())
        self._wake(provider)

    @property
    def waiting(self) -> int:
        return self._waiting

    def active(self, provider: str) -> int:
        return self._active.get(provider, 0)

    def _wake(self, provider: str) -> None:
        waiters = self._waiters[provider]
        while waiters and self._active[provider] < self._limits[provider]:
            fut = waiters.popleft()
            if fut.done():
                continue
            self._active[provider] += 1
            fut.set_result(None)

    def _release(self, provider: str) -> None:
        self._active[provider] -= 1
        self._wake(provider)

    @asynccontextmanager
    async def slot(self, provider: str) -> AsyncIterator[None]:
        """Hold one of the provider's slots for the duration of the block."""
        if not self.enabled:
            yield
            return

        limit = self._limits[provider]
        waiters = self._waiters[provider]
        if self._active[provider] >= limit or waiters:
            if self._waiting >= self.queue_size:
                self._rejected += 1
                logger.warning("Queue full (%d waiting); rejecting request for %s", self._waiting, provider)
                raise QueueFullError(
                    f"Request queue is full ({self.queue_size} waiting)",
                    provider=provider,
                )
            fut = asyncio.get_running_loop().create_future()
            waiters.append(fut)
            self._waiting += 1
            try:
                await fut
            except asyncio.CancelledError:
                # Slot was handed over just before the cancel landed
                if fut.done() and not fut.cancelled():
                    self._release(provider)
                raise
            finally:
                self._waiting -= 1
                if fut in waiters:
                    waiters.remove(fut)
        else:
            self._active[provider] += 1

        try:
            yield
        finally:
            self._release(provider)

    def get_stats(self) -> dict:
        return {
            "enabled": self.enabled,
            "waiting": self._waiting,
            "queue_size": self.queue_size,
            "rejected": self._rejected,
            "providers": {
                pid: {"active": self._active.get(pid, 0), "limit": limit} for pid, limit in self._limits.items()
            },
        }
