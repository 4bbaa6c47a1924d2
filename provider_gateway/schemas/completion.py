from pydantic import BaseModel, Field

from provider_gateway.gateway.types import RequestPriority, RoutingStrategy


class RouteRequest(BaseModel):
    prompt: str = Field(min_length=1)
    model: str | None = None
    provider: str | None = None
    priority: RequestPriority | None = None
    max_tokens: int | None = Field(None, gt=0)
    temperature: float | None = Field(None, ge=0, le=2)
    user_id: str | None = Field(None, max_length=255)
    quality_ranks: dict[str, int] | None = None  # per-request override for quality-based routing


class TokenCounts(BaseModel):
    input: int
    output: int


class RouteResponse(BaseModel):
    response: str
    provider: str
    model: str
    tokens: TokenCounts
    latency_ms: int
    cached: bool
    cost: float
    request_id: str
    budget_exceeded: bool = False


class MessageIn(BaseModel):
    role: str = Field(pattern=r"^(system|user|assistant)$")
    content: str


class ChatCompletionRequest(BaseModel):
    messages: list[MessageIn] = Field(min_length=1)
    model: str | None = None
    provider: str | None = None
    priority: RequestPriority | None = None
    max_tokens: int | None = Field(None, gt=0)
    temperature: float | None = Field(None, ge=0, le=2)
    user_id: str | None = Field(None, max_length=255)
    quality_ranks: dict[str, int] | None = None  # per-request override for quality-based routing


class UsageOut(BaseModel):
    input_tokens: int
    output_tokens: int
    total_tokens: int


class ChatCompletionResponse(BaseModel):
    content: str
    model: str
    usage: UsageOut
    cost: float
    latency: int
    provider: str
    cached: bool
    request_id: str


class StrategyUpdate(BaseModel):
    strategy: RoutingStrategy


class ProviderUpdate(BaseModel):
    enabled: bool | None = None
    weight: float | None = Field(None, ge=0)
    priority: int | None = None
    quality_rank: int | None = None
    max_concurrent: int | None = Field(None, ge=1)
    timeout_ms: int | None = Field(None, gt=0)
    default_model: str | None = None
