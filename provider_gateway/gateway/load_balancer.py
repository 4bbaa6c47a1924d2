"""Strategy-driven candidate ordering over eligible providers.

A provider is eligible when it is enabled and its circuit is CLOSED, or
HALF_OPEN with a free probe slot. Ties break by provider priority (lower
first), then registration order. Every strategy is deterministic given the
same state snapshot and RNG seed.
"""

from __future__ import annotations

import logging

from provider_gateway.gateway.state import RouterState
from provider_gateway.gateway.types import CompletionRequest, ProviderProfile, RoutingStrategy

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


def estimate_cost(profile: ProviderProfile, request: CompletionRequest) -> float:
    """Estimated $ for this request at the model the provider would use."""
    model = profile.resolve_model(request.model)
    input_tokens = request.prompt_chars // CHARS_PER_TOKEN
    return profile.calculate_cost(model, input_tokens, request.max_tokens)


class LoadBalancer:
    def __init__(self, state: RouterState):
        self.state = state

    def tie_break_order(self) -> list[str]:
        """All providers by configured priority; registration order among equals."""
        profiles = self.state.profiles
        return sorted(profiles, key=lambda p: profiles[p].priority)

    def eligible(self) -> list[str]:
        """Enabled providers whose breaker currently admits traffic, in tie-break order."""
        result = []
        for pid in self.tie_break_order():
            profile = self.state.profiles[pid]
            if not profile.enabled:
                continue
            if not self.state.breakers[pid].snapshot().available:
                continue
            result.append(pid)
        return result

    def candidates(self, request: CompletionRequest) -> list[str]:
        """Ordered candidate list for one request."""
        if request.provider and request.provider not in self.state.profiles:
            raise ValueError(f"Unknown provider: {request.provider}")

        eligible = self.eligible()
        if not eligible:
            return []

        ordered = self.order(eligible, request)

        if request.provider and request.provider in ordered:
            ordered.remove(request.provider)
            ordered.insert(0, request.provider)
        return ordered

    def order(self, providers: list[str], request: CompletionRequest) -> list[str]:
        strategy = self.state.strategy
        position = {pid: i for i, pid in enumerate(self.tie_break_order())}

        if strategy == RoutingStrategy.COST:
            return sorted(
                providers,
                key=lambda p: (estimate_cost(self.state.profiles[p], request), position[p]),
            )

        if strategy == RoutingStrategy.PERFORMANCE:

            def _latency_key(pid: str) -> tuple:
                p50 = self.state.p50_latency(pid)
                # Unmeasured providers go last
                return (p50 is None, p50 if p50 is not None else 0.0, position[pid])

            return sorted(providers, key=_latency_key)

        if strategy == RoutingStrategy.QUALITY:
            overrides = request.quality_ranks or {}
            return sorted(
                providers,
                key=lambda p: (overrides.get(p, self.state.profiles[p].quality_rank), position[p]),
            )

        if strategy == RoutingStrategy.ROUND_ROBIN:
            offset = self.state.round_robin_offset % len(providers)
            self.state.round_robin_offset += 1
            return providers[offset:] + providers[:offset]

        if strategy == RoutingStrategy.WEIGHTED:
            return self._weighted_order(providers)

        raise ValueError(f"Unknown routing strategy: {strategy}")

    def _weighted_order(self, providers: list[str]) -> list[str]:
        """Weighted sampling without replacement using the router's seeded RNG."""
        remaining = list(providers)
        weights = [max(self.state.profiles[p].weight, 0.0) for p in remaining]
        ordered: list[str] = []
        rng = self.state.rng

        while remaining:
            total = sum(weights)
            if total <= 0:
                # Only zero-weight providers left: keep registration order
                ordered.extend(remaining)
                break
            pick = rng.random() * total
            idx = len(remaining) - 1
            for i, w in enumerate(weights):
                pick -= w
                if pick < 0:
                    idx = i
                    break
            ordered.append(remaining.pop(idx))
            weights.pop(idx)
        return ordered
