"""ProviderRouter: orchestrator integrating all gateway components.

Per-request protocol:
  1. Fingerprint the request and check the cache; a hit returns immediately,
     even when the budget is exhausted
  2. Budget gate (hard-stop mode rejects non-critical requests)
  3. Ask the LoadBalancer for an ordered, breaker-filtered candidate list
  4. For each candidate, ask its CircuitBreaker for permission (skip if denied)
  5. Dispatch through the RetryCoordinator; on success record usage, report
     success to the breaker, write through to the cache and return
  6. If every candidate is exhausted, raise AllProvidersUnavailableError

Usage:
    async with ProviderRouter(RouterConfig.from_settings(settings)) as router:
        result = await router.route("Summarize this ticket", priority=RequestPriority.HIGH)
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import asdict
from typing import Any, Awaitable, Callable, Iterable

import httpx
from sqlalchemy.exc import SQLAlchemyError

from provider_gateway.core.metrics import (
    CACHE_LOOKUPS,
    CIRCUIT_TRANSITIONS,
    COST_USD,
    PROVIDER_ERRORS,
    PROVIDER_LATENCY,
    ROUTED_REQUESTS,
    TOKENS_USED,
)
from provider_gateway.gateway.cache_engine import CacheEngine, CacheHit, Embedder
from provider_gateway.gateway.circuit_breaker import CircuitBreaker, CircuitState
from provider_gateway.gateway.concurrency_limiter import ConcurrencyLimiter
from provider_gateway.gateway.config import ProviderSettings, RouterConfig
from provider_gateway.gateway.errors import (
    AllProvidersUnavailableError,
    BudgetExceededError,
    CircuitOpenError,
    DeadlineExceededError,
    GatewayError,
    QueueFullError,
)
from provider_gateway.gateway.events import EventBus, EventHandler, GatewayEvent
from provider_gateway.gateway.health_monitor import HealthMonitor
from provider_gateway.gateway.load_balancer import LoadBalancer
from provider_gateway.gateway.normalizer import coerce_messages, fingerprint, normalize_result, prompt_messages
from provider_gateway.gateway.provider_adapters import BaseProviderAdapter, get_adapter
from provider_gateway.gateway.retry import RetryCoordinator
from provider_gateway.gateway.state import RouterState
from provider_gateway.gateway.token_tracker import TokenTracker
from provider_gateway.gateway.types import (
    BudgetMode,
    ChatCompletionResult,
    ChatMessage,
    CompletionRequest,
    CompletionResult,
    ModelPricing,
    ProviderProfile,
    RequestPriority,
    RouteResult,
    RoutingStrategy,
    UsageRecord,
)

logger = logging.getLogger(__name__)

_CIRCUIT_EVENTS = {
    CircuitState.OPEN: GatewayEvent.CIRCUIT_OPENED,
    CircuitState.HALF_OPEN: GatewayEvent.CIRCUIT_HALF_OPEN,
    CircuitState.CLOSED: GatewayEvent.CIRCUIT_CLOSED,
}

_PROFILE_FIELDS = {
    "weight",
    "pricing",
    "default_model",
    "max_concurrent",
    "enabled",
    "quality_rank",
    "priority",
    "timeout_ms",
}


class ProviderRouter:
    """Main gateway facade.

    Integrates:
      - ProviderAdapters: protocol-specific HTTP calls
      - CircuitBreaker: one per provider, failure isolation
      - LoadBalancer: strategy-driven candidate ordering
      - RetryCoordinator: bounded backoff, then failover
      - ConcurrencyLimiter: per-provider slots, bounded global queue
      - CacheEngine: exact and similarity response cache
      - TokenTracker: usage ledger and budgets
      - HealthMonitor: periodic probes
    """

    def __init__(
        self,
        config: RouterConfig | dict[str, Any] | None = None,
        *,
        adapters: dict[str, BaseProviderAdapter] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        embedder: Embedder | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            config: RouterConfig or a plain dict (snake_case or camelCase keys)
            adapters: Pre-built adapters by provider id (tests, custom clients)
            transport: httpx transport shared by adapters built here
            embedder: Text -> unit vector function for similarity lookups
            clock: Monotonic clock for breakers, retries and deadlines
            wall_clock: Epoch clock for cache TTLs and budget windows
            sleep: Backoff sleep
        """
        if isinstance(config, dict):
            config = RouterConfig.model_validate(config)
        self.config = config or RouterConfig()
        self._clock = clock
        self._wall_clock = wall_clock

        self.events = EventBus()
        self.state = RouterState(strategy=self.config.strategy, rng=random.Random(self.config.seed))
        self.limiter = ConcurrencyLimiter(
            self.config.load_balancing.queue_size,
            enabled=self.config.enable_load_balancing,
        )

        adapters = adapters or {}
        for pid, provider_settings in self.config.providers.items():
            self._register(pid, provider_settings, adapters.get(pid), transport)

        self.load_balancer = LoadBalancer(self.state)
        self.retry = RetryCoordinator(
            self.config.retry,
            clock=clock,
            sleep=sleep,
            rng=random.Random(self.config.seed),
        )
        self.cache = CacheEngine(self.config.cache, embedder=embedder, clock=wall_clock)
        self.tracker = TokenTracker(
            self.config.budgets,
            self.config.ledger,
            events=self.events,
            profiles=self.state.profiles,
            clock=wall_clock,
        )
        self.health_monitor = HealthMonitor(
            self.state,
            self.config.health_check,
            events=self.events,
            clock=wall_clock,
        )

        self._started = False
        self._closed = False

    def _register(
        self,
        pid: str,
        provider_settings: ProviderSettings,
        adapter: BaseProviderAdapter | None,
        transport: httpx.AsyncBaseTransport | None,
    ) -> None:
        ps = provider_settings
        if adapter is None:
            kwargs: dict[str, Any] = {
                "base_url": ps.base_url,
                "project_id": ps.project_id,
                "location": ps.location,
                "endpoint": ps.endpoint,
                "deployment": ps.deployment,
                "api_version": ps.api_version,
            }
            if pid == "copilot":
                kwargs.pop("base_url")
            adapter = get_adapter(
                pid,
                ps.api_key,
                timeout=ps.timeout_ms / 1000,
                transport=transport,
                **{k: v for k, v in kwargs.items() if v is not None},
            )

        profile = adapter.default_profile()
        profile.enabled = ps.enabled
        profile.priority = ps.priority
        profile.timeout_ms = ps.timeout_ms
        profile.max_concurrent = ps.max_concurrent or self.config.load_balancing.max_concurrent_requests
        if ps.weight is not None:
            profile.weight = ps.weight
        if ps.default_model:
            profile.default_model = ps.default_model
        if ps.quality_rank is not None:
            profile.quality_rank = ps.quality_rank
        if ps.pricing:
            profile.pricing.update({m: ModelPricing(p.input, p.output) for m, p in ps.pricing.items()})
        adapter.profile = profile

        breaker = CircuitBreaker(
            pid,
            self.config.circuit_breaker,
            clock=self._clock,
            on_transition=self._on_circuit_transition,
            enabled=self.config.enable_circuit_breaker,
        )
        self.state.register(profile, adapter, breaker)
        self.limiter.configure(pid, profile.max_concurrent)

    # -- Lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        await self.tracker.initialize()
        await self.cache.warm()
        if self.config.enable_health_monitoring and self.state.profiles:
            self.health_monitor.start()
        self._started = True
        logger.info(
            "Provider router started: providers=%s strategy=%s",
            ",".join(self.state.provider_ids) or "-",
            self.state.strategy.value,
        )

    async def shutdown(self, drain_timeout: float | None = 30.0) -> None:
        """Stop probes, drain in-flight requests, then close cache, ledger and adapters."""
        if self._closed:
            return
        self._closed = True
        await self.health_monitor.stop()

        if not await self.state.wait_idle(drain_timeout):
            logger.warning("Shutdown drain timed out with %d requests in flight", self.state.in_flight)

        await self.cache.close()
        await self.tracker.close()
        for adapter in self.state.adapters.values():
            await adapter.aclose()
        await self.events.aclose()
        logger.info("Provider router shut down")

    async def __aenter__(self) -> ProviderRouter:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()

    # -- Public API ---------------------------------------------------------

    async def route(
        self,
        prompt: str,
        *,
        model: str | None = None,
        provider: str | None = None,
        priority: RequestPriority | int | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        user_id: str | None = None,
        quality_ranks: dict[str, int] | None = None,
    ) -> RouteResult:
        request = self._build_request(
            prompt_messages(prompt),
            model=model,
            provider=provider,
            priority=priority,
            max_tokens=max_tokens,
            temperature=temperature,
            user_id=user_id,
            quality_ranks=quality_ranks,
        )
        result = await self.complete(request)
        return RouteResult(
            response=result.content,
            provider=result.provider,
            model=result.model,
            tokens={"input": result.usage.input_tokens, "output": result.usage.output_tokens},
            latency_ms=result.latency_ms,
            cached=result.cached,
            cost=result.cost,
            request_id=result.request_id,
            budget_exceeded=result.budget_exceeded,
        )

    async def create_chat_completion(
        self,
        messages: Iterable[ChatMessage | dict[str, Any]],
        *,
        max_tokens: int | None = None,
        provider: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        priority: RequestPriority | int | None = None,
        user_id: str | None = None,
        quality_ranks: dict[str, int] | None = None,
    ) -> ChatCompletionResult:
        request = self._build_request(
            coerce_messages(messages),
            model=model,
            provider=provider,
            priority=priority,
            max_tokens=max_tokens,
            temperature=temperature,
            user_id=user_id,
            quality_ranks=quality_ranks,
        )
        result = await self.complete(request)
        return ChatCompletionResult(
            content=result.content,
            model=result.model,
            usage=result.usage,
            cost=result.cost,
            latency=result.latency_ms,
            provider=result.provider,
            cached=result.cached,
            request_id=result.request_id,
        )

    def _build_request(
        self,
        messages: list[ChatMessage],
        *,
        model: str | None,
        provider: str | None,
        priority: RequestPriority | int | None,
        max_tokens: int | None,
        temperature: float | None,
        user_id: str | None,
        quality_ranks: dict[str, int] | None,
    ) -> CompletionRequest:
        if provider and provider not in self.state.profiles:
            raise ValueError(f"Unknown provider: {provider}")
        request = CompletionRequest(messages=messages, model=model, provider=provider, user_id=user_id)
        if priority is not None:
            request.priority = RequestPriority(priority)
        if max_tokens is not None:
            if max_tokens <= 0:
                raise ValueError("max_tokens must be positive")
            request.max_tokens = max_tokens
        if temperature is not None:
            request.temperature = temperature
        if quality_ranks:
            unknown = sorted(set(quality_ranks) - set(self.state.profiles))
            if unknown:
                raise ValueError(f"Unknown provider in quality_ranks: {', '.join(unknown)}")
            request.quality_ranks = dict(quality_ranks)
        return request

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        """Run one canonical request through the full routing protocol."""
        if self._closed:
            raise RuntimeError("Router has been shut down")

        self.state.begin_request()
        self.state.stats.total_requests += 1
        try:
            return await self._complete(request)
        except GatewayError as e:
            rejected = isinstance(e, (BudgetExceededError, QueueFullError))
            if rejected:
                self.state.stats.rejected_requests += 1
            self.state.stats.failed_requests += 1
            ROUTED_REQUESTS.labels(provider=e.provider or "none", outcome="rejected" if rejected else "failed").inc()
            self.events.emit(
                GatewayEvent.REQUEST_FAILED,
                request_id=request.request_id,
                error=e.code,
                message=e.message,
                provider=e.provider,
                attempts=e.attempts,
            )
            logger.warning(
                "Request failed: %s",
                e.message,
                extra={"request_id": request.request_id, "provider": e.provider, "attempts": e.attempts},
            )
            raise
        finally:
            self.state.end_request()

    async def _complete(self, request: CompletionRequest) -> CompletionResult:
        deadline = self._clock() + self.config.load_balancing.timeout_ms / 1000

        if not self.cache.config.enabled:
            return await self._dispatch(request, deadline, self._budget_gate(request))

        async with self.cache.single_flight(fingerprint(request)):
            hit = await self.cache.get(request)
            CACHE_LOOKUPS.labels(result=hit.tier if hit else "miss").inc()
            if hit is not None:
                return self._on_cache_hit(request, hit, self.tracker.is_budget_exceeded())
            return await self._dispatch(request, deadline, self._budget_gate(request))

    def _budget_gate(self, request: CompletionRequest) -> bool:
        """Returns whether the budget is exceeded; raises in hard-stop mode for non-critical requests."""
        over_budget = self.tracker.is_budget_exceeded()
        if over_budget and self.tracker.mode == BudgetMode.HARD_STOP and request.priority != RequestPriority.CRITICAL:
            raise BudgetExceededError("Budget exceeded; non-critical requests are rejected (hard-stop)")
        return over_budget

    def _on_cache_hit(self, request: CompletionRequest, hit: CacheHit, over_budget: bool) -> CompletionResult:
        result = hit.result
        result.budget_exceeded = over_budget
        self.state.stats.cache_hits += 1
        self.state.stats.successful_requests += 1
        ROUTED_REQUESTS.labels(provider=result.provider, outcome="cached").inc()
        self.events.emit(
            GatewayEvent.CACHE_HIT,
            request_id=request.request_id,
            fingerprint=hit.fingerprint,
            tier=hit.tier,
            similarity=hit.similarity,
            provider=result.provider,
        )
        self.events.emit(GatewayEvent.REQUEST_COMPLETE, **result.to_dict())
        return result

    async def _dispatch(self, request: CompletionRequest, deadline: float, over_budget: bool) -> CompletionResult:
        candidates = self.load_balancer.candidates(request)
        if not self.config.enable_failover:
            candidates = candidates[:1]

        if candidates:
            first = candidates[0]
            decisions = self.state.stats.routing_decisions
            decisions[first] = decisions.get(first, 0) + 1
        self.events.emit(
            GatewayEvent.ROUTING_DECISION,
            request_id=request.request_id,
            strategy=self.state.strategy.value,
            candidates=list(candidates),
            selected=candidates[0] if candidates else None,
        )

        errors: dict[str, GatewayError] = {}
        previous: str | None = None
        attempted = 0

        for pid in candidates:
            breaker = self.state.breakers[pid]
            if not breaker.allow_request():
                errors[pid] = CircuitOpenError(f"Circuit open for {pid}", provider=pid)
                continue

            if self.retry.remaining(deadline) <= 0:
                breaker.release()
                raise DeadlineExceededError(
                    "Request deadline exceeded",
                    provider=previous,
                    attempts=attempted,
                    cause=errors.get(previous) if previous else None,
                )

            if previous is not None:
                self.state.stats.failovers += 1
                self.events.emit(
                    GatewayEvent.FAILOVER,
                    request_id=request.request_id,
                    from_provider=previous,
                    to_provider=pid,
                    reason=errors[previous].code,
                )
                logger.info(
                    "Failing over %s -> %s",
                    previous,
                    pid,
                    extra={"request_id": request.request_id, "provider": pid},
                )

            adapter = self.state.adapters[pid]
            profile = self.state.profiles[pid]
            pstats = self.state.provider_stats[pid]
            pstats.requests += 1

            async def _call(timeout: float, _pid: str = pid, _adapter: BaseProviderAdapter = adapter):
                async with self.limiter.slot(_pid):
                    return await _adapter.execute(request, timeout=timeout)

            try:
                result, attempts = await self.retry.run(
                    pid,
                    _call,
                    deadline=deadline,
                    attempt_timeout=profile.timeout_ms / 1000,
                )
            except QueueFullError:
                breaker.release()
                raise
            except DeadlineExceededError as e:
                if e.attempts:
                    breaker.record_failure()
                else:
                    breaker.release()
                raise
            except GatewayError as e:
                attempted += 1
                previous = pid
                breaker.record_failure()
                pstats.failures += 1
                pstats.last_error = e.message
                PROVIDER_ERRORS.labels(provider=pid, error=e.code).inc()
                errors[pid] = e
                if not e.retryable:
                    raise
                if self.retry.remaining(deadline) <= 0:
                    raise DeadlineExceededError(
                        "Request deadline exceeded",
                        provider=pid,
                        attempts=attempted,
                        cause=e,
                    ) from e
                continue
            except (asyncio.CancelledError, Exception):
                breaker.release()
                raise

            breaker.record_success()
            result.attempts = attempts
            return await self._on_success(request, normalize_result(result), over_budget)

        raise AllProvidersUnavailableError(
            f"All providers unavailable ({len(candidates)} candidates, {attempted} attempted)",
            errors=errors,
            attempts=attempted,
        )

    async def _on_success(self, request: CompletionRequest, result: CompletionResult, over_budget: bool) -> CompletionResult:
        pid = result.provider
        pstats = self.state.provider_stats[pid]
        pstats.successes += 1
        pstats.total_latency_ms += result.latency_ms
        pstats.total_tokens += result.usage.total_tokens
        pstats.total_cost += result.cost
        self.state.record_latency(pid, result.latency_ms)
        PROVIDER_LATENCY.labels(provider=pid).observe(result.latency_ms / 1000)

        record = UsageRecord(
            request_id=request.request_id,
            provider=pid,
            model=result.model,
            input_tokens=result.usage.input_tokens,
            output_tokens=result.usage.output_tokens,
            cost=result.cost,
            timestamp=self._wall_clock(),
            latency_ms=result.latency_ms,
            user_id=request.user_id,
        )
        if await self.tracker.track_usage(record):
            TOKENS_USED.labels(provider=pid, direction="input").inc(record.input_tokens)
            TOKENS_USED.labels(provider=pid, direction="output").inc(record.output_tokens)
            COST_USD.labels(provider=pid).inc(record.cost)
            self.events.emit(GatewayEvent.USAGE_TRACKED, **asdict(record))

        result.budget_exceeded = over_budget or (
            self.tracker.mode == BudgetMode.SOFT_WARN and self.tracker.is_budget_exceeded()
        )

        try:
            await self.cache.set(request, result)
        except SQLAlchemyError:
            logger.exception("Cache write failed", extra={"request_id": request.request_id, "provider": pid})

        self.state.stats.successful_requests += 1
        ROUTED_REQUESTS.labels(provider=pid, outcome="success").inc()
        self.events.emit(GatewayEvent.REQUEST_COMPLETE, **result.to_dict())
        return result

    # -- Observability ------------------------------------------------------

    def _on_circuit_transition(self, provider: str, old: CircuitState, new: CircuitState) -> None:
        CIRCUIT_TRANSITIONS.labels(provider=provider, state=new.value).inc()
        self.events.emit(_CIRCUIT_EVENTS[new], provider=provider, previous=old.value, state=new.value)

    def subscribe(self, event: GatewayEvent | str, handler: EventHandler) -> Callable[[], None]:
        return self.events.subscribe(event, handler)

    def get_provider_health(self) -> dict[str, dict]:
        health = {}
        for pid, profile in self.state.profiles.items():
            breaker_state = self.state.breakers[pid].state
            probe = self.state.health[pid]
            p50 = self.state.p50_latency(pid)
            health[pid] = {
                "healthy": profile.enabled and breaker_state != CircuitState.OPEN and probe.healthy is not False,
                "latency": int(p50) if p50 is not None else None,
                "circuit": breaker_state.value,
                "enabled": profile.enabled,
                "last_checked": probe.last_checked,
                "last_error": probe.last_error,
            }
        return health

    def get_stats(self) -> dict:
        stats = self.state.stats
        completed = stats.successful_requests + stats.failed_requests
        providers = {}
        for pid in self.state.profiles:
            snapshot = self.state.breakers[pid].snapshot()
            p50 = self.state.p50_latency(pid)
            providers[pid] = {
                **self.state.provider_stats[pid].to_dict(),
                "p50_latency_ms": int(p50) if p50 is not None else None,
                "circuit": snapshot.to_dict(),
            }
        return {
            "strategy": self.state.strategy.value,
            "total_requests": stats.total_requests,
            "successful_requests": stats.successful_requests,
            "failed_requests": stats.failed_requests,
            "rejected_requests": stats.rejected_requests,
            "cache_hits": stats.cache_hits,
            "success_rate": round(stats.successful_requests / completed, 4) if completed else 0.0,
            "failovers": stats.failovers,
            "circuit_breaker_trips": sum(p["circuit"]["trips"] for p in providers.values()),
            "routing_decisions": dict(stats.routing_decisions),
            "in_flight": self.state.in_flight,
            "providers": providers,
            "cache": self.cache.get_stats(),
            "concurrency": self.limiter.get_stats(),
        }

    def get_budget_status(self) -> dict:
        return self.tracker.get_budget_status()

    def get_cache_analytics(self, limit: int = 100, top: int = 20) -> dict | None:
        return self.cache.get_analytics(limit=limit, top=top)

    async def get_usage_stats(self, start: float | None = None, end: float | None = None) -> dict:
        return await self.tracker.get_usage_stats(start, end)

    async def cleanup(self) -> dict:
        """Drop expired cache entries and ledger rows past retention."""
        return {
            "cache_entries_removed": await self.cache.cleanup_expired(),
            "usage_records_removed": await self.tracker.cleanup_old_data(),
        }

    # -- Admin --------------------------------------------------------------

    def set_strategy(self, strategy: RoutingStrategy | str) -> RoutingStrategy:
        try:
            new_strategy = RoutingStrategy(strategy)
        except ValueError:
            valid = ", ".join(s.value for s in RoutingStrategy)
            raise ValueError(f"Unknown routing strategy: {strategy} (expected one of {valid})") from None
        self.state.strategy = new_strategy
        logger.info("Routing strategy set to %s", new_strategy.value, extra={"strategy": new_strategy.value})
        return new_strategy

    def _profile(self, provider: str) -> ProviderProfile:
        try:
            return self.state.profiles[provider]
        except KeyError:
            raise ValueError(f"Unknown provider: {provider}") from None

    def reset_circuit_breaker(self, provider: str) -> None:
        self._profile(provider)
        self.state.breakers[provider].reset()

    def set_provider_enabled(self, provider: str, enabled: bool) -> None:
        self._profile(provider).enabled = enabled
        logger.info("Provider %s %s", provider, "enabled" if enabled else "disabled")

    def update_provider_profile(self, provider: str, **changes: Any) -> ProviderProfile:
        profile = self._profile(provider)
        unknown = set(changes) - _PROFILE_FIELDS
        if unknown:
            raise ValueError(f"Unknown profile field(s): {', '.join(sorted(unknown))}")

        for name, value in changes.items():
            if name == "pricing":
                profile.pricing.update(
                    {
                        m: p if isinstance(p, ModelPricing) else ModelPricing(float(p["input"]), float(p["output"]))
                        for m, p in value.items()
                    }
                )
            else:
                setattr(profile, name, value)

        if "max_concurrent" in changes:
            self.limiter.configure(provider, profile.max_concurrent)
        logger.info("Provider %s profile updated: %s", provider, ", ".join(sorted(changes)))
        return profile
