"""Core types and DTOs for the provider gateway."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ProviderId(str, Enum):
    """Supported LLM providers (closed set)."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    VERTEX = "vertex"
    GROK = "grok"
    COPILOT = "copilot"


class RoutingStrategy(str, Enum):
    """Candidate ordering strategies for the load balancer."""

    COST = "cost-based"
    PERFORMANCE = "performance-based"
    QUALITY = "quality-based"
    ROUND_ROBIN = "round-robin"
    WEIGHTED = "weighted"


class RequestPriority(int, Enum):
    """Request priority (lower = more important)."""

    CRITICAL = 0  # Never rejected by a hard-stop budget
    HIGH = 1
    NORMAL = 2
    LOW = 3


class BudgetMode(str, Enum):
    SOFT_WARN = "soft-warn"
    HARD_STOP = "hard-stop"


class SimilarityAlgorithm(str, Enum):
    COSINE = "cosine"  # hashed bag-of-words embeddings
    JACCARD = "jaccard"  # token sets
    LEVENSHTEIN = "levenshtein"  # edit distance over normalized text


# ---------------------------------------------------------------------------
# Canonical request
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChatMessage:
    role: str  # system | user | assistant
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass
class CompletionRequest:
    """A canonical completion request, independent of any provider protocol."""

    messages: list[ChatMessage] = field(default_factory=list)
    model: str | None = None  # hint; used only if the chosen provider prices it
    max_tokens: int = 1024
    temperature: float = 0.7
    provider: str | None = None  # explicit override, moved to the front if eligible
    priority: RequestPriority = RequestPriority.NORMAL
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = field(default_factory=time.time)

    # Per-request overrides
    quality_ranks: dict[str, int] | None = None
    user_id: str | None = None

    @property
    def system_prompt(self) -> str:
        return "\n\n".join(m.content for m in self.messages if m.role == "system")

    @property
    def prompt_chars(self) -> int:
        return sum(len(m.content) for m in self.messages)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def to_dict(self) -> dict:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class CompletionResult:
    """Unified result from any provider, identical in shape across backends."""

    provider: str = ""
    model: str = ""
    content: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)
    cost: float = 0.0
    latency_ms: int = 0
    cached: bool = False
    request_id: str = ""
    finish_reason: str = "stop"
    attempts: int = 1
    budget_exceeded: bool = False
    similarity: float | None = None  # set on near-duplicate cache hits

    # Provider-specific raw data (not cached, not serialized)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible dict for storage/API."""
        return {
            "provider": self.provider,
            "model": self.model,
            "content": self.content,
            "usage": self.usage.to_dict(),
            "cost": self.cost,
            "latency_ms": self.latency_ms,
            "cached": self.cached,
            "request_id": self.request_id,
            "finish_reason": self.finish_reason,
            "attempts": self.attempts,
            "budget_exceeded": self.budget_exceeded,
            "similarity": self.similarity,
        }

    @classmethod
    def from_dict(cls, data: dict) -> CompletionResult:
        usage = data.get("usage") or {}
        return cls(
            provider=data.get("provider", ""),
            model=data.get("model", ""),
            content=data.get("content", ""),
            usage=TokenUsage(
                input_tokens=usage.get("input_tokens", 0),
                output_tokens=usage.get("output_tokens", 0),
                total_tokens=usage.get("total_tokens", 0),
            ),
            cost=data.get("cost", 0.0),
            latency_ms=data.get("latency_ms", 0),
            cached=data.get("cached", False),
            request_id=data.get("request_id", ""),
            finish_reason=data.get("finish_reason", "stop"),
            attempts=data.get("attempts", 1),
            budget_exceeded=data.get("budget_exceeded", False),
            similarity=data.get("similarity"),
        )


@dataclass
class RouteResult:
    """Result of the single-prompt ``route()`` API."""

    response: str
    provider: str
    model: str
    tokens: dict[str, int]  # {"input": ..., "output": ...}
    latency_ms: int
    cached: bool
    cost: float = 0.0
    request_id: str = ""
    budget_exceeded: bool = False

    def to_dict(self) -> dict:
        return {
            "response": self.response,
            "provider": self.provider,
            "model": self.model,
            "tokens": dict(self.tokens),
            "latency_ms": self.latency_ms,
            "cached": self.cached,
            "cost": self.cost,
            "request_id": self.request_id,
            "budget_exceeded": self.budget_exceeded,
        }


@dataclass
class ChatCompletionResult:
    """Result of the ``create_chat_completion()`` API."""

    content: str
    model: str
    usage: TokenUsage
    cost: float
    latency: int  # milliseconds
    provider: str = ""
    cached: bool = False
    request_id: str = ""

    def to_dict(self) -> dict:
        return {
            "content": self.content,
            "model": self.model,
            "usage": self.usage.to_dict(),
            "cost": self.cost,
            "latency": self.latency,
            "provider": self.provider,
            "cached": self.cached,
            "request_id": self.request_id,
        }


# ---------------------------------------------------------------------------
# Provider profile & ledger records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelPricing:
    """USD per 1M tokens."""

    input: float
    output: float


@dataclass
class ProviderProfile:
    """Static routing profile for one provider.

    Mutated only through the router's admin calls.
    """

    id: str
    weight: float = 1.0
    pricing: dict[str, ModelPricing] = field(default_factory=dict)
    default_model: str = ""
    max_concurrent: int = 10
    enabled: bool = True
    quality_rank: int = 100
    priority: int = 0
    timeout_ms: int = 60_000

    def resolve_model(self, hint: str | None) -> str:
        """Use the hinted model only when this provider prices it."""
        if hint and hint in self.pricing:
            return hint
        return self.default_model

    def calculate_cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        pricing = self.pricing.get(model) or self.pricing.get(self.default_model)
        if pricing is None:
            return 0.0
        return round((input_tokens * pricing.input + output_tokens * pricing.output) / 1_000_000, 8)


@dataclass(frozen=True)
class UsageRecord:
    """One ledger entry. Only successful provider calls are recorded."""

    request_id: str
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    cost: float
    timestamp: float = field(default_factory=time.time)  # epoch seconds
    success: bool = True
    latency_ms: int = 0
    user_id: str | None = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens
