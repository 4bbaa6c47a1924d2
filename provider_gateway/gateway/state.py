"""Explicitly owned mutable router state.

One RouterState per ProviderRouter, built at construction and torn down on
shutdown. Components receive it by reference; nothing here is a module-level
singleton, so several routers can live in one process.
"""

from __future__ import annotations

import asyncio
import random
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

from provider_gateway.gateway.types import ProviderProfile, RoutingStrategy

if TYPE_CHECKING:
    from provider_gateway.gateway.circuit_breaker import CircuitBreaker
    from provider_gateway.gateway.provider_adapters import BaseProviderAdapter

LATENCY_WINDOW = 100  # samples kept per provider


@dataclass
class ProviderStats:
    requests: int = 0
    successes: int = 0
    failures: int = 0
    total_latency_ms: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    last_error: str = ""

    def to_dict(self) -> dict:
        return {
            "requests": self.requests,
            "successes": self.successes,
            "failures": self.failures,
            "success_rate": round(self.successes / self.requests, 4) if self.requests else 0.0,
            "avg_latency_ms": int(self.total_latency_ms / self.successes) if self.successes else 0,
            "total_tokens": self.total_tokens,
            "total_cost": round(self.total_cost, 6),
            "last_error": self.last_error,
        }


@dataclass
class RouterStats:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    cache_hits: int = 0
    failovers: int = 0
    rejected_requests: int = 0  # budget hard-stop / queue full
    routing_decisions: dict[str, int] = field(default_factory=dict)


@dataclass
class ProviderHealth:
    healthy: bool | None = None  # None = never probed
    last_checked: float | None = None
    last_error: str = ""


@dataclass
class RouterState:
    profiles: dict[str, ProviderProfile] = field(default_factory=dict)  # registration order
    adapters: dict[str, BaseProviderAdapter] = field(default_factory=dict)
    breakers: dict[str, CircuitBreaker] = field(default_factory=dict)
    strategy: RoutingStrategy = RoutingStrategy.COST
    rng: random.Random = field(default_factory=random.Random)
    round_robin_offset: int = 0

    stats: RouterStats = field(default_factory=RouterStats)
    provider_stats: dict[str, ProviderStats] = field(default_factory=dict)
    health: dict[str, ProviderHealth] = field(default_factory=dict)
    latencies: dict[str, deque[int]] = field(default_factory=dict)

    in_flight: int = 0
    _idle: asyncio.Event = field(default_factory=asyncio.Event)

    def __post_init__(self):
        self._idle.set()

    @property
    def provider_ids(self) -> list[str]:
        return list(self.profiles)

    def register(self, profile: ProviderProfile, adapter: BaseProviderAdapter, breaker: CircuitBreaker) -> None:
        self.profiles[profile.id] = profile
        self.adapters[profile.id] = adapter
        self.breakers[profile.id] = breaker
        self.provider_stats[profile.id] = ProviderStats()
        self.health[profile.id] = ProviderHealth()
        self.latencies[profile.id] = deque(maxlen=LATENCY_WINDOW)

    # -- Latency ------------------------------------------------------------

    def record_latency(self, provider: str, latency_ms: int) -> None:
        self.latencies[provider].append(latency_ms)

    def p50_latency(self, provider: str) -> float | None:
        """Rolling median latency, or None if the provider was never measured."""
        window = self.latencies.get(provider)
        if not window:
            return None
        return float(np.median(np.fromiter(window, dtype=float)))

    # -- In-flight tracking -------------------------------------------------

    def begin_request(self) -> None:
        self.in_flight += 1
        self._idle.clear()

    def end_request(self) -> None:
        self.in_flight = max(0, self.in_flight - 1)
        if self.in_flight == 0:
            self._idle.set()

    async def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait until no request is in flight. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True
