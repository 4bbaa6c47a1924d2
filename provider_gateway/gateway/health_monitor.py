"""Periodic provider health probes.

Each probe sends a minimal completion through the provider's adapter.
Successful probes feed the rolling latency window used by the
performance-based strategy. A failed probe counts as a breaker failure only
while the circuit is CLOSED; HALF_OPEN recovery is decided by real traffic
and OPEN circuits are left to their timeout.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from provider_gateway.gateway.circuit_breaker import CircuitState
from provider_gateway.gateway.config import HealthCheckConfig
from provider_gateway.gateway.errors import GatewayError
from provider_gateway.gateway.events import EventBus, GatewayEvent
from provider_gateway.gateway.state import RouterState

logger = logging.getLogger(__name__)


class HealthMonitor:
    def __init__(
        self,
        state: RouterState,
        config: HealthCheckConfig | None = None,
        *,
        events: EventBus | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.state = state
        self.config = config or HealthCheckConfig()
        self._events = events
        self._clock = clock
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="provider-health-monitor")
        logger.info("Health monitor started (interval=%dms)", self.config.interval_ms)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Health monitor stopped")

    async def _run(self) -> None:
        while True:
            try:
                await self.check_all()
            except Exception:
                logger.exception("Health check round failed")
            await asyncio.sleep(self.config.interval_ms / 1000)

    async def check_all(self) -> dict[str, bool]:
        providers = [pid for pid, p in self.state.profiles.items() if p.enabled]
        results = await asyncio.gather(*(self.check_provider(pid) for pid in providers))
        return dict(zip(providers, results))

    async def check_provider(self, provider: str) -> bool:
        adapter = self.state.adapters[provider]
        breaker = self.state.breakers[provider]
        health = self.state.health[provider]
        timeout = self.config.timeout_ms / 1000

        latency_ms: int | None = None
        try:
            latency_ms = await asyncio.wait_for(adapter.check_health(timeout=timeout), timeout=timeout)
            healthy = True
            health.last_error = ""
            self.state.record_latency(provider, latency_ms)
        except (GatewayError, asyncio.TimeoutError) as e:
            healthy = False
            health.last_error = str(e) or type(e).__name__
            logger.warning("Health check failed for %s: %s", provider, health.last_error)
            if breaker.state == CircuitState.CLOSED:
                breaker.record_failure()

        health.healthy = healthy
        health.last_checked = self._clock()
        if self._events is not None:
            self._events.emit(
                GatewayEvent.HEALTH_CHECKED,
                provider=provider,
                healthy=healthy,
                latency_ms=latency_ms,
            )
        return healthy
