"""End-to-end routing scenarios against fake provider backends."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from conftest import openai_body
from provider_gateway.gateway.circuit_breaker import CircuitState
from provider_gateway.gateway.errors import (
    AllProvidersUnavailableError,
    AuthError,
    BudgetExceededError,
    DeadlineExceededError,
    InvalidResponseError,
    RateLimitError,
)
from provider_gateway.gateway.events import GatewayEvent
from provider_gateway.gateway.types import RequestPriority, RoutingStrategy

DOLLAR_PER_OUTPUT_TOKEN = {"gpt-5.1-instant": {"input": 0, "output": 1_000_000}}


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestRouting:
    @pytest.mark.asyncio
    async def test_cheapest_provider_serves_request(self, make_router, fake_providers):
        router = make_router()

        result = await router.route("Hello there")

        # anthropic is cheaper than openai at the default max_tokens
        assert result.provider == "anthropic"
        assert result.response == "answer from anthropic"
        assert result.tokens == {"input": 10, "output": 5}
        assert result.cached is False
        assert result.cost > 0
        assert fake_providers.calls == {"anthropic": 1}

    @pytest.mark.asyncio
    async def test_provider_override(self, make_router, fake_providers):
        router = make_router()

        result = await router.route("Hello there", provider="openai")

        assert result.provider == "openai"
        assert fake_providers.calls == {"openai": 1}

    @pytest.mark.asyncio
    async def test_unknown_provider_rejected(self, make_router, fake_providers):
        router = make_router()

        with pytest.raises(ValueError, match="Unknown provider"):
            await router.route("Hello there", provider="vertex")
        assert fake_providers.calls == {}

    @pytest.mark.asyncio
    async def test_non_positive_max_tokens_rejected(self, make_router):
        router = make_router()
        with pytest.raises(ValueError, match="max_tokens"):
            await router.route("Hello there", max_tokens=0)

    @pytest.mark.asyncio
    async def test_chat_completion(self, make_router):
        router = make_router(["openai"])

        result = await router.create_chat_completion(
            [{"role": "system", "content": "Be brief."}, {"role": "user", "content": "Hi"}],
            max_tokens=64,
        )

        assert result.provider == "openai"
        assert result.content == "answer from openai"
        assert result.usage.total_tokens == 15
        assert result.latency >= 0

    @pytest.mark.asyncio
    async def test_strategy_switch(self, make_router):
        router = make_router()
        router.set_strategy("quality-based")
        assert router.state.strategy == RoutingStrategy.QUALITY

        with pytest.raises(ValueError, match="Unknown routing strategy"):
            router.set_strategy("fastest")

    @pytest.mark.asyncio
    async def test_disabled_provider_is_skipped(self, make_router, fake_providers):
        router = make_router()
        router.set_provider_enabled("anthropic", False)

        result = await router.route("Hello there")

        assert result.provider == "openai"
        assert fake_providers.calls["anthropic"] == 0

    @pytest.mark.asyncio
    async def test_profile_update_changes_order(self, make_router):
        router = make_router()
        router.update_provider_profile("openai", pricing={"gpt-5.1-instant": {"input": 0, "output": 0}})

        result = await router.route("Hello there")

        assert result.provider == "openai"
        assert result.cost == 0.0

    @pytest.mark.asyncio
    async def test_profile_update_rejects_unknown_field(self, make_router):
        router = make_router()
        with pytest.raises(ValueError, match="Unknown profile field"):
            router.update_provider_profile("openai", colour="blue")
        with pytest.raises(ValueError, match="Unknown provider"):
            router.update_provider_profile("vertex", weight=2.0)

    @pytest.mark.asyncio
    async def test_per_request_quality_ranks(self, make_router, fake_providers):
        router = make_router(strategy="quality-based", cache={"enabled": False})

        first = await router.route("Hello there", quality_ranks={"openai": 9, "anthropic": 1})
        second = await router.create_chat_completion(
            [{"role": "user", "content": "Hello there"}],
            quality_ranks={"openai": 1, "anthropic": 9},
        )

        assert first.provider == "anthropic"
        assert second.provider == "openai"

    @pytest.mark.asyncio
    async def test_quality_ranks_reject_unknown_provider(self, make_router):
        router = make_router()
        with pytest.raises(ValueError, match="quality_ranks: vertex"):
            await router.route("Hello there", quality_ranks={"vertex": 1})

    @pytest.mark.asyncio
    async def test_configured_priority_breaks_rotation_ties(self, make_router, fake_providers):
        router = make_router(strategy="round-robin", provider_overrides={"anthropic": {"priority": -1}})

        result = await router.route("Hello there")

        assert result.provider == "anthropic"
        assert router.state.profiles["anthropic"].priority == -1


class TestCaching:
    @pytest.mark.asyncio
    async def test_repeat_request_served_from_cache(self, make_router, fake_providers):
        router = make_router()
        first = await router.route("What is a circuit breaker?")

        second = await router.route("what is a   circuit breaker?")

        assert second.cached is True
        assert second.response == first.response
        assert second.cost == 0.0
        assert second.request_id != first.request_id
        assert sum(fake_providers.calls.values()) == 1
        assert router.get_stats()["cache_hits"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_identical_requests_call_provider_once(self, make_router, fake_providers):
        router = make_router()

        results = await asyncio.gather(router.route("Same question"), router.route("Same question"))

        assert sum(fake_providers.calls.values()) == 1
        assert sorted(r.cached for r in results) == [False, True]

    @pytest.mark.asyncio
    async def test_cache_hit_does_not_touch_ledger(self, make_router):
        router = make_router()
        await router.route("Hello there")
        await router.route("Hello there")

        stats = await router.get_usage_stats()
        assert stats["total"]["requests"] == 1


class TestFailover:
    @pytest.mark.asyncio
    async def test_retries_then_fails_over(self, make_router, fake_providers):
        router = make_router()
        failovers = []
        router.subscribe(GatewayEvent.FAILOVER, failovers.append)
        fake_providers.fail("anthropic", 500)

        result = await router.route("Hello there")

        assert result.provider == "openai"
        assert fake_providers.calls["anthropic"] == 3
        assert fake_providers.calls["openai"] == 1
        assert router.get_stats()["failovers"] == 1
        assert failovers[0]["from_provider"] == "anthropic"
        assert failovers[0]["to_provider"] == "openai"
        # One breaker failure per request, not per attempt
        assert router.state.breakers["anthropic"].snapshot().consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_open_circuit_is_skipped(self, make_router, fake_providers):
        router = make_router()
        breaker = router.state.breakers["anthropic"]
        for _ in range(breaker.config.failure_threshold):
            breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

        result = await router.route("Hello there")

        assert result.provider == "openai"
        assert fake_providers.calls["anthropic"] == 0

    @pytest.mark.asyncio
    async def test_all_providers_rate_limited(self, make_router, fake_providers):
        router = make_router()
        fake_providers.fail("anthropic", 429)
        fake_providers.fail("openai", 429)

        with pytest.raises(AllProvidersUnavailableError) as exc_info:
            await router.route("Hello there")

        errors = exc_info.value.errors
        assert set(errors) == {"anthropic", "openai"}
        assert all(isinstance(e, RateLimitError) for e in errors.values())
        assert fake_providers.calls == {"anthropic": 3, "openai": 3}
        for pid in ("anthropic", "openai"):
            assert router.state.breakers[pid].snapshot().total_failures == 1
        assert router.get_stats()["failed_requests"] == 1

    @pytest.mark.asyncio
    async def test_no_eligible_provider(self, make_router, fake_providers):
        router = make_router(["openai"])
        router.set_provider_enabled("openai", False)

        with pytest.raises(AllProvidersUnavailableError):
            await router.route("Hello there")
        assert fake_providers.calls == {}

    @pytest.mark.asyncio
    async def test_non_retryable_error_propagates(self, make_router, fake_providers):
        router = make_router()
        fake_providers.fail("anthropic", 401)

        with pytest.raises(AuthError):
            await router.route("Hello there")

        assert fake_providers.calls == {"anthropic": 1}

    @pytest.mark.asyncio
    async def test_failover_disabled_uses_first_candidate_only(self, make_router, fake_providers):
        router = make_router(enable_failover=False)
        fake_providers.fail("anthropic", 503)

        with pytest.raises(AllProvidersUnavailableError):
            await router.route("Hello there")
        assert fake_providers.calls["openai"] == 0

    @pytest.mark.asyncio
    async def test_deadline_stops_failover(self, make_router, fake_providers):
        clock = FakeClock()

        def slow_failure(_request: httpx.Request) -> httpx.Response:
            clock.now += 200
            return httpx.Response(500, json={"error": {"message": "boom"}})

        router = make_router(clock=clock, load_balancing={"timeout_ms": 100_000})
        fake_providers.responses["anthropic"] = slow_failure

        with pytest.raises(DeadlineExceededError):
            await router.route("Hello there")

        assert fake_providers.calls == {"anthropic": 1}

    @pytest.mark.asyncio
    async def test_half_open_recovery(self, make_router, fake_providers):
        clock = FakeClock()
        router = make_router(["openai"], clock=clock)
        transitions = []
        for event in (GatewayEvent.CIRCUIT_OPENED, GatewayEvent.CIRCUIT_HALF_OPEN, GatewayEvent.CIRCUIT_CLOSED):
            router.subscribe(event, lambda e: transitions.append(e["event"]))

        breaker = router.state.breakers["openai"]
        for _ in range(breaker.config.failure_threshold):
            breaker.record_failure()
        with pytest.raises(AllProvidersUnavailableError):
            await router.route("first")
        assert fake_providers.calls["openai"] == 0

        clock.now += breaker.config.timeout_ms / 1000
        await router.route("second")
        await router.route("third")

        assert breaker.state == CircuitState.CLOSED
        assert transitions == ["circuit:opened", "circuit:half-open", "circuit:closed"]

    @pytest.mark.asyncio
    async def test_malformed_usage_on_half_open_provider(self, make_router, fake_providers):
        clock = FakeClock()
        router = make_router(["openai"], clock=clock, circuit_breaker={"half_open_requests": 1})
        breaker = router.state.breakers["openai"]
        for _ in range(breaker.config.failure_threshold):
            breaker.record_failure()
        clock.now += breaker.config.timeout_ms / 1000
        assert breaker.state == CircuitState.HALF_OPEN

        body = openai_body()
        body["usage"]["prompt_tokens"] = "n/a"
        fake_providers.responses["openai"] = lambda _request: httpx.Response(200, json=body)

        with pytest.raises(InvalidResponseError):
            await router.route("Hello there")

        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_unexpected_error_frees_half_open_slot(self, make_router, fake_providers, monkeypatch):
        clock = FakeClock()
        router = make_router(["openai"], clock=clock, circuit_breaker={"half_open_requests": 1})
        breaker = router.state.breakers["openai"]
        for _ in range(breaker.config.failure_threshold):
            breaker.record_failure()
        clock.now += breaker.config.timeout_ms / 1000

        async def explode(request, timeout=None):
            raise RuntimeError("adapter bug")

        adapter = router.state.adapters["openai"]
        monkeypatch.setattr(adapter, "execute", explode)
        with pytest.raises(RuntimeError):
            await router.route("first")
        assert breaker.state == CircuitState.HALF_OPEN

        monkeypatch.undo()
        result = await router.route("second")
        assert result.provider == "openai"


class TestBudgets:
    def _budget_router(self, make_router, mode: str):
        return make_router(
            ["openai"],
            provider_overrides={"openai": {"pricing": DOLLAR_PER_OUTPUT_TOKEN}},
            cache={"enabled": False},
            budgets={"daily": 100, "alert_threshold": 0.9, "mode": mode},
        )

    @pytest.mark.asyncio
    async def test_hard_stop_still_serves_cache_hits(self, make_router, fake_providers):
        router = make_router(
            ["openai"],
            provider_overrides={"openai": {"pricing": DOLLAR_PER_OUTPUT_TOKEN}},
            budgets={"daily": 100, "mode": "hard-stop"},
        )
        fake_providers.succeed("openai", input_tokens=0, output_tokens=150)
        await router.route("What is a circuit breaker?")
        assert router.tracker.is_budget_exceeded()

        cached = await router.route("What is a circuit breaker?")
        assert cached.cached is True
        assert cached.budget_exceeded is True
        assert fake_providers.calls["openai"] == 1

        with pytest.raises(BudgetExceededError):
            await router.route("Tell me about ocean tides")
        assert fake_providers.calls["openai"] == 1

    @pytest.mark.asyncio
    async def test_hard_stop_rejects_non_critical(self, make_router, fake_providers):
        router = self._budget_router(make_router, "hard-stop")
        alerts, exceeded = [], []
        router.subscribe(GatewayEvent.BUDGET_ALERT, alerts.append)
        router.subscribe(GatewayEvent.BUDGET_EXCEEDED, exceeded.append)

        fake_providers.succeed("openai", input_tokens=0, output_tokens=95)
        first = await router.route("first")
        assert first.cost == pytest.approx(95.0)
        assert len(alerts) == 1
        assert exceeded == []

        fake_providers.succeed("openai", input_tokens=0, output_tokens=15)
        await router.route("second")
        assert len(exceeded) == 1
        assert router.get_budget_status()["daily"]["used"] == pytest.approx(110.0)

        with pytest.raises(BudgetExceededError):
            await router.route("third")
        assert fake_providers.calls["openai"] == 2

        critical = await router.route("fourth", priority=RequestPriority.CRITICAL)
        assert critical.budget_exceeded is True
        assert fake_providers.calls["openai"] == 3
        assert router.get_stats()["rejected_requests"] == 1

    @pytest.mark.asyncio
    async def test_soft_warn_flags_but_serves(self, make_router, fake_providers):
        router = self._budget_router(make_router, "soft-warn")

        fake_providers.succeed("openai", input_tokens=0, output_tokens=120)
        over = await router.route("first")
        assert over.budget_exceeded is True

        after = await router.route("second")
        assert after.budget_exceeded is True
        assert fake_providers.calls["openai"] == 2


class TestObservability:
    @pytest.mark.asyncio
    async def test_events_emitted_for_successful_request(self, make_router):
        router = make_router()
        seen = []
        router.subscribe("*", seen.append)

        result = await router.route("Hello there")

        names = [e["event"] for e in seen]
        assert names == ["routing-decision", "usage-tracked", "request:complete"]
        assert seen[0]["selected"] == "anthropic"
        assert seen[2]["request_id"] == result.request_id

    @pytest.mark.asyncio
    async def test_failed_request_event(self, make_router, fake_providers):
        router = make_router(["openai"])
        failed = []
        router.subscribe(GatewayEvent.REQUEST_FAILED, failed.append)
        fake_providers.fail("openai", 403)

        with pytest.raises(AuthError):
            await router.route("Hello there")

        assert failed[0]["error"] == "auth_error"
        assert failed[0]["provider"] == "openai"

    @pytest.mark.asyncio
    async def test_stats(self, make_router, fake_providers):
        router = make_router()
        await router.route("one")
        await router.route("two")
        fake_providers.fail("anthropic", 401)
        with pytest.raises(AuthError):
            await router.route("three")

        stats = router.get_stats()

        assert stats["total_requests"] == 3
        assert stats["successful_requests"] == 2
        assert stats["failed_requests"] == 1
        assert stats["success_rate"] == pytest.approx(0.6667)
        assert stats["routing_decisions"] == {"anthropic": 3}
        assert stats["providers"]["anthropic"]["successes"] == 2
        assert stats["providers"]["anthropic"]["failures"] == 1
        assert stats["in_flight"] == 0

    @pytest.mark.asyncio
    async def test_provider_health(self, make_router, fake_providers):
        router = make_router()
        fake_providers.fail("openai", 503)

        results = await router.health_monitor.check_all()

        assert results == {"openai": False, "anthropic": True}
        health = router.get_provider_health()
        assert health["openai"]["healthy"] is False
        assert health["openai"]["last_error"]
        assert health["anthropic"]["healthy"] is True
        assert health["anthropic"]["latency"] is not None
        assert health["anthropic"]["circuit"] == "closed"

    @pytest.mark.asyncio
    async def test_reset_circuit_breaker(self, make_router):
        router = make_router()
        breaker = router.state.breakers["openai"]
        for _ in range(breaker.config.failure_threshold):
            breaker.record_failure()

        router.reset_circuit_breaker("openai")

        assert router.get_provider_health()["openai"]["circuit"] == "closed"
        with pytest.raises(ValueError):
            router.reset_circuit_breaker("grok")


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_context_manager_starts_and_shuts_down(self, make_router):
        router = make_router()
        async with router:
            result = await router.route("Hello there")
            assert result.provider == "anthropic"

        with pytest.raises(RuntimeError, match="shut down"):
            await router.route("Hello there")

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, make_router):
        router = make_router()
        await router.start()
        await router.shutdown(drain_timeout=1)
        await router.shutdown(drain_timeout=1)
        assert router.state.in_flight == 0

    @pytest.mark.asyncio
    async def test_cleanup(self, make_router):
        router = make_router()
        await router.route("Hello there")

        assert await router.cleanup() == {"cache_entries_removed": 0, "usage_records_removed": 0}
