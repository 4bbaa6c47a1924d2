"""Router configuration models.

All models accept either snake_case field names or their camelCase aliases,
so a config dict written as ``{"circuitBreaker": {"failureThreshold": 3}}``
and one written as ``{"circuit_breaker": {"failure_threshold": 3}}`` are
equivalent.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from provider_gateway.gateway.types import BudgetMode, ProviderId, RoutingStrategy, SimilarityAlgorithm

if TYPE_CHECKING:
    from provider_gateway.core.config import Settings


class _ConfigModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class ModelPricingConfig(_ConfigModel):
    """USD per 1M tokens."""

    input: float = Field(ge=0)
    output: float = Field(ge=0)


class ProviderSettings(_ConfigModel):
    enabled: bool = True
    api_key: str = ""
    priority: int = 0
    weight: float | None = Field(default=None, ge=0)

    base_url: str | None = None
    default_model: str | None = None
    quality_rank: int | None = None
    max_concurrent: int | None = Field(default=None, ge=1)
    timeout_ms: int = Field(default=60_000, gt=0)
    pricing: dict[str, ModelPricingConfig] | None = None

    # Vertex
    project_id: str | None = None
    location: str | None = None
    # Copilot (Azure OpenAI)
    endpoint: str | None = None
    deployment: str | None = None
    api_version: str | None = None


class CircuitBreakerConfig(_ConfigModel):
    failure_threshold: int = Field(default=5, ge=1)
    success_threshold: int = Field(default=2, ge=1)
    timeout_ms: int = Field(default=60_000, ge=0)
    half_open_requests: int = Field(default=3, ge=1)


class RetryConfig(_ConfigModel):
    max_retries: int = Field(default=3, ge=1)  # attempts per provider per request
    initial_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=10_000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)


class LoadBalancingConfig(_ConfigModel):
    max_concurrent_requests: int = Field(default=10, ge=1)
    queue_size: int = Field(default=100, ge=0)
    timeout_ms: int = Field(default=120_000, gt=0)  # global per-request deadline


class HealthCheckConfig(_ConfigModel):
    interval_ms: int = Field(default=60_000, gt=0)
    timeout_ms: int = Field(default=10_000, gt=0)


class MemoryCacheConfig(_ConfigModel):
    max_size: int = Field(default=500, ge=1)
    ttl_seconds: float = Field(default=3600, gt=0)


class PersistentCacheConfig(_ConfigModel):
    path: str | None = None  # None = memory-only cache
    ttl_seconds: float = Field(default=86_400, gt=0)


class SimilarityConfig(_ConfigModel):
    enabled: bool = True
    threshold: float = Field(default=0.85, ge=0, le=1)
    algorithm: SimilarityAlgorithm = SimilarityAlgorithm.COSINE


class AnalyticsConfig(_ConfigModel):
    enabled: bool = True
    track_patterns: bool = True
    window_size: int = Field(default=1000, ge=1)  # most recent lookups kept


class CacheConfig(_ConfigModel):
    enabled: bool = True
    memory: MemoryCacheConfig = Field(default_factory=MemoryCacheConfig)
    persistent: PersistentCacheConfig = Field(default_factory=PersistentCacheConfig)
    similarity: SimilarityConfig = Field(default_factory=SimilarityConfig)
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)


class BudgetConfig(_ConfigModel):
    daily: float | None = Field(default=None, gt=0)
    monthly: float | None = Field(default=None, gt=0)
    alert_threshold: float = Field(default=0.8, gt=0, le=1)
    mode: BudgetMode = BudgetMode.SOFT_WARN


class LedgerConfig(_ConfigModel):
    path: str | None = None  # None = private in-memory database
    retention_days: int = Field(default=90, ge=1)


class RouterConfig(_ConfigModel):
    strategy: RoutingStrategy = RoutingStrategy.COST
    enable_failover: bool = True
    enable_load_balancing: bool = True
    enable_circuit_breaker: bool = True
    enable_health_monitoring: bool = True

    providers: dict[str, ProviderSettings] = Field(default_factory=dict)

    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    load_balancing: LoadBalancingConfig = Field(default_factory=LoadBalancingConfig)
    health_check: HealthCheckConfig = Field(default_factory=HealthCheckConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    budgets: BudgetConfig = Field(default_factory=BudgetConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)

    seed: int | None = None

    @field_validator("providers")
    @classmethod
    def _known_providers(cls, value: dict[str, ProviderSettings]) -> dict[str, ProviderSettings]:
        known = {p.value for p in ProviderId}
        unknown = sorted(set(value) - known)
        if unknown:
            raise ValueError(f"Unknown provider(s): {', '.join(unknown)}; expected one of {sorted(known)}")
        return value

    @classmethod
    def from_settings(cls, settings: Settings) -> RouterConfig:
        """Build a router config from process settings (env / .env).

        Only providers with credentials are registered, in ProviderId order.
        """
        providers: dict[str, ProviderSettings] = {}
        if settings.openai_api_key:
            providers[ProviderId.OPENAI.value] = ProviderSettings(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
            )
        if settings.anthropic_api_key:
            providers[ProviderId.ANTHROPIC.value] = ProviderSettings(
                api_key=settings.anthropic_api_key,
                base_url=settings.anthropic_base_url,
            )
        if settings.vertex_access_token:
            providers[ProviderId.VERTEX.value] = ProviderSettings(
                api_key=settings.vertex_access_token,
                project_id=settings.vertex_project_id,
                location=settings.vertex_location,
            )
        if settings.xai_api_key:
            providers[ProviderId.GROK.value] = ProviderSettings(
                api_key=settings.xai_api_key,
                base_url=settings.xai_base_url,
            )
        if settings.azure_openai_api_key:
            providers[ProviderId.COPILOT.value] = ProviderSettings(
                api_key=settings.azure_openai_api_key,
                endpoint=settings.azure_openai_endpoint,
                deployment=settings.azure_openai_deployment,
            )

        return cls(
            strategy=RoutingStrategy(settings.router_strategy),
            providers=providers,
            cache=CacheConfig(
                persistent=PersistentCacheConfig(path=settings.cache_db_path or None),
                similarity=SimilarityConfig(algorithm=SimilarityAlgorithm(settings.cache_similarity_algorithm)),
            ),
            budgets=BudgetConfig(
                daily=settings.budget_daily,
                monthly=settings.budget_monthly,
                alert_threshold=settings.budget_alert_threshold,
                mode=BudgetMode(settings.budget_mode),
            ),
            ledger=LedgerConfig(path=settings.ledger_db_path or None),
            seed=settings.router_seed,
        )
