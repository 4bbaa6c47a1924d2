"""Tests for periodic provider health probes."""

from __future__ import annotations

import asyncio

import pytest

from provider_gateway.gateway.circuit_breaker import CircuitState
from provider_gateway.gateway.events import GatewayEvent


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestHealthMonitor:
    @pytest.mark.asyncio
    async def test_healthy_probe_records_latency(self, make_router, fake_providers):
        router = make_router(["openai"])
        checked = []
        router.subscribe(GatewayEvent.HEALTH_CHECKED, checked.append)

        assert await router.health_monitor.check_provider("openai") is True

        health = router.state.health["openai"]
        assert health.healthy is True
        assert health.last_checked is not None
        assert router.state.p50_latency("openai") is not None
        assert checked[0]["provider"] == "openai"
        assert checked[0]["healthy"] is True
        # Probe is a one-token completion
        _, request = fake_providers.requests[0]
        assert b'"max_tokens":1' in request.content.replace(b" ", b"")

    @pytest.mark.asyncio
    async def test_failed_probe_counts_toward_closed_breaker(self, make_router, fake_providers):
        router = make_router(["openai"])
        fake_providers.fail("openai", 503)

        assert await router.health_monitor.check_provider("openai") is False

        assert router.state.health["openai"].last_error
        assert router.state.breakers["openai"].snapshot().consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_failed_probe_leaves_half_open_breaker_alone(self, make_router, fake_providers):
        clock = FakeClock()
        router = make_router(["openai"], clock=clock)
        breaker = router.state.breakers["openai"]
        for _ in range(breaker.config.failure_threshold):
            breaker.record_failure()
        clock.now += breaker.config.timeout_ms / 1000
        assert breaker.state == CircuitState.HALF_OPEN

        fake_providers.fail("openai", 503)
        assert await router.health_monitor.check_provider("openai") is False

        assert breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_disabled_providers_not_probed(self, make_router, fake_providers):
        router = make_router()
        router.set_provider_enabled("anthropic", False)

        assert await router.health_monitor.check_all() == {"openai": True}
        assert fake_providers.calls["anthropic"] == 0

    @pytest.mark.asyncio
    async def test_runs_with_router_lifecycle(self, make_router, fake_providers):
        router = make_router(enable_health_monitoring=True, health_check={"interval_ms": 3_600_000})

        await router.start()
        assert router.health_monitor.running
        for _ in range(20):
            if fake_providers.calls.total() >= 2:
                break
            await asyncio.sleep(0.01)
        assert fake_providers.calls == {"openai": 1, "anthropic": 1}

        await router.shutdown(drain_timeout=1)
        assert not router.health_monitor.running
