"""AI Provider Gateway Layer.

Routes completion requests across AI providers with:
  - Provider Adapters (OpenAI, Anthropic, Vertex, Grok, Copilot)
  - Strategy-driven Load Balancer with per-provider concurrency limits
  - Circuit Breaker and bounded retry with exponential backoff and jitter
  - Exact and similarity response cache (memory + SQLite)
  - Token and cost ledger with daily/monthly budgets
"""

from provider_gateway.gateway.config import RouterConfig
from provider_gateway.gateway.errors import (
    AllProvidersUnavailableError,
    AuthError,
    BudgetExceededError,
    DeadlineExceededError,
    GatewayError,
    InvalidResponseError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    QueueFullError,
    RateLimitError,
)
from provider_gateway.gateway.events import GatewayEvent
from provider_gateway.gateway.router import ProviderRouter
from provider_gateway.gateway.types import (
    BudgetMode,
    ChatCompletionResult,
    ChatMessage,
    RequestPriority,
    RouteResult,
    RoutingStrategy,
)

__all__ = [
    "AllProvidersUnavailableError",
    "AuthError",
    "BudgetExceededError",
    "BudgetMode",
    "ChatCompletionResult",
    "ChatMessage",
    "DeadlineExceededError",
    "GatewayError",
    "GatewayEvent",
    "InvalidResponseError",
    "ProviderRouter",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "QueueFullError",
    "RateLimitError",
    "RequestPriority",
    "RouteResult",
    "RoutingStrategy",
    "RouterConfig",
]
