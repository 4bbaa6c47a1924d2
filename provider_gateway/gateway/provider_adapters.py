"""Provider adapters: protocol-level handling for each LLM backend.

Each adapter translates a CompletionRequest into the provider's HTTP
protocol, sends it, and returns a CompletionResult with normalized fields.
Failures are classified here, once, into the gateway error taxonomy.
Adapters never retry; that is the RetryCoordinator's job.

Provider-specific behaviors:
  - OpenAI: standard chat completions
  - Anthropic: Messages API, separate ``system`` field, 529 "overloaded"
  - Vertex: Gemini generateContent, finishReason SAFETY -> empty content
  - Grok: OpenAI-compatible at api.x.ai
  - Copilot: Azure OpenAI deployment endpoint with ``api-key`` header
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx

from provider_gateway.gateway.errors import (
    AuthError,
    InvalidResponseError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitError,
)
from provider_gateway.gateway.types import (
    ChatMessage,
    CompletionRequest,
    CompletionResult,
    ModelPricing,
    ProviderId,
    ProviderProfile,
    TokenUsage,
)

logger = logging.getLogger(__name__)


@dataclass
class _ParsedCompletion:
    content: str
    input_tokens: int
    output_tokens: int
    finish_reason: str = "stop"


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header (delta-seconds or HTTP date) into seconds."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _error_detail(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str):
            return err
        if data.get("message"):
            return str(data["message"])
    return resp.text[:200]


class BaseProviderAdapter(ABC):
    """Base class for all provider adapters."""

    provider: ProviderId
    default_model: str
    default_base_url: str = ""
    pricing: dict[str, ModelPricing] = {}
    quality_rank: int = 100
    weight: float = 1.0

    def __init__(
        self,
        api_key: str = "",
        *,
        base_url: str | None = None,
        profile: ProviderProfile | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs,
    ):
        self.api_key = api_key
        self.base_url = (base_url or self.default_base_url).rstrip("/")
        self.profile = profile or self.default_profile()
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def default_profile(cls) -> ProviderProfile:
        return ProviderProfile(
            id=cls.provider.value,
            weight=cls.weight,
            pricing=dict(cls.pricing),
            default_model=cls.default_model,
            quality_rank=cls.quality_rank,
        )

    @property
    def client(self) -> httpx.AsyncClient:
        """One long-lived client per adapter, created on first use."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    # -- Protocol hooks -----------------------------------------------------

    def _check_credentials(self) -> None:
        if not self.api_key:
            raise AuthError(f"No API key configured for {self.provider.value}", provider=self.provider.value)

    @abstractmethod
    def _build_request(self, request: CompletionRequest, model: str) -> tuple[str, dict, dict]:
        """Return (url, headers, json payload)."""
        ...

    @abstractmethod
    def _parse_response(self, data: dict) -> _ParsedCompletion:
        ...

    # -- Execution ----------------------------------------------------------

    async def execute(self, request: CompletionRequest, timeout: float | None = None) -> CompletionResult:
        """Send a request to the provider and return a normalized result."""
        self._check_credentials()
        model = self.profile.resolve_model(request.model)
        url, headers, payload = self._build_request(request, model)

        start = time.monotonic()
        data = await self._post_json(url, headers, payload, timeout=timeout)
        latency_ms = int((time.monotonic() - start) * 1000)

        try:
            parsed = self._parse_response(data)
        except (KeyError, IndexError, TypeError, AttributeError, ValueError) as e:
            raise InvalidResponseError(
                f"Malformed {self.provider.value} response: {e!r}",
                provider=self.provider.value,
                cause=e,
            ) from e

        return CompletionResult(
            provider=self.provider.value,
            model=model,
            content=parsed.content,
            usage=TokenUsage(
                input_tokens=parsed.input_tokens,
                output_tokens=parsed.output_tokens,
                total_tokens=parsed.input_tokens + parsed.output_tokens,
            ),
            cost=self.profile.calculate_cost(model, parsed.input_tokens, parsed.output_tokens),
            latency_ms=latency_ms,
            request_id=request.request_id,
            finish_reason=parsed.finish_reason,
            raw=data,
        )

    async def check_health(self, timeout: float | None = None) -> int:
        """Send a minimal probe completion. Returns latency in ms, raises on failure."""
        probe = CompletionRequest(
            messages=[ChatMessage(role="user", content="ping")],
            max_tokens=1,
            temperature=0.0,
        )
        result = await self.execute(probe, timeout=timeout)
        return result.latency_ms

    async def _post_json(self, url: str, headers: dict, payload: dict, timeout: float | None = None) -> dict:
        pid = self.provider.value
        try:
            resp = await self.client.post(
                url,
                json=payload,
                headers=headers,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"{pid} timed out", provider=pid, cause=e) from e
        except httpx.ConnectError as e:
            raise ProviderUnavailableError(f"{pid} connection failed: {e}", provider=pid, cause=e) from e
        except (httpx.RemoteProtocolError, httpx.ReadError) as e:
            # Connection dropped before a full response: outcome unknown
            raise ProviderTimeoutError(f"{pid} connection dropped: {e}", provider=pid, cause=e) from e
        except httpx.TransportError as e:
            raise ProviderUnavailableError(f"{pid} transport error: {e}", provider=pid, cause=e) from e

        status = resp.status_code
        if status >= 400:
            logger.debug("%s responded %d to %s", pid, status, url)
        if status in (401, 403):
            raise AuthError(f"{pid} rejected credentials ({status}): {_error_detail(resp)}", provider=pid)
        if status == 429:
            retry_after = parse_retry_after(resp.headers.get("retry-after"))
            raise RateLimitError(f"Rate limited by {pid}", provider=pid, retry_after=retry_after)
        if status >= 500:
            raise ProviderUnavailableError(f"{pid} returned {status}: {_error_detail(resp)}", provider=pid)
        if status >= 400:
            raise InvalidResponseError(f"{pid} returned {status}: {_error_detail(resp)}", provider=pid)

        try:
            data = resp.json()
        except ValueError as e:
            raise InvalidResponseError(f"{pid} returned non-JSON body", provider=pid, cause=e) from e
        if not isinstance(data, dict):
            raise InvalidResponseError(f"{pid} returned unexpected JSON type {type(data).__name__}", provider=pid)
        return data


# ---------------------------------------------------------------------------
# OpenAI-compatible adapters (OpenAI, Grok, Copilot)
# ---------------------------------------------------------------------------


class OpenAICompatibleAdapter(BaseProviderAdapter):
    """Shared protocol for chat-completions style APIs."""

    def _url(self, model: str) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _build_request(self, request: CompletionRequest, model: str) -> tuple[str, dict, dict]:
        payload = {
            "model": model,
            "messages": [m.to_dict() for m in request.messages],
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
        }
        return self._url(model), self._headers(), payload

    def _parse_response(self, data: dict) -> _ParsedCompletion:
        choice = data["choices"][0]
        usage = data.get("usage") or {}
        return _ParsedCompletion(
            content=choice["message"].get("content") or "",
            input_tokens=int(usage.get("prompt_tokens", 0)),
            output_tokens=int(usage.get("completion_tokens", 0)),
            finish_reason=choice.get("finish_reason") or "stop",
        )


# Pricing per 1M tokens
_OPENAI_PRICING = {
    "gpt-5.1-instant": ModelPricing(input=5.00, output=20.00),
    "gpt-5.1-thinking": ModelPricing(input=10.00, output=40.00),
    "gpt-4o-2024-11-20": ModelPricing(input=2.50, output=10.00),
}


class OpenAIAdapter(OpenAICompatibleAdapter):
    """OpenAI Chat Completions adapter."""

    provider = ProviderId.OPENAI
    default_model = "gpt-5.1-instant"
    default_base_url = "https://api.openai.com/v1"
    pricing = _OPENAI_PRICING
    quality_rank = 2


_GROK_PRICING = {
    "grok-4.1-eq": ModelPricing(input=8.00, output=24.00),
    "grok-4-thinking": ModelPricing(input=10.00, output=30.00),
}


class GrokAdapter(OpenAICompatibleAdapter):
    """xAI Grok adapter (OpenAI-compatible)."""

    provider = ProviderId.GROK
    default_model = "grok-4.1-eq"
    default_base_url = "https://api.x.ai/v1"
    pricing = _GROK_PRICING
    quality_rank = 4
    weight = 0.8


_COPILOT_PRICING = {
    "copilot-365-gpt4": ModelPricing(input=10.00, output=30.00),
    "copilot-m365-hybrid": ModelPricing(input=12.00, output=36.00),
}


class CopilotAdapter(OpenAICompatibleAdapter):
    """Microsoft Copilot via an Azure OpenAI deployment."""

    provider = ProviderId.COPILOT
    default_model = "copilot-365-gpt4"
    default_api_version = "2024-08-01-preview"
    pricing = _COPILOT_PRICING
    quality_rank = 5
    weight = 0.9

    def __init__(
        self,
        api_key: str = "",
        *,
        endpoint: str | None = None,
        deployment: str | None = None,
        api_version: str | None = None,
        **kwargs,
    ):
        super().__init__(api_key, base_url=endpoint, **kwargs)
        self.deployment = deployment or ""
        self.api_version = api_version or self.default_api_version

    def _check_credentials(self) -> None:
        super()._check_credentials()
        if not self.base_url:
            raise AuthError("No Azure OpenAI endpoint configured for copilot", provider=self.provider.value)

    def _url(self, model: str) -> str:
        deployment = self.deployment or model
        return f"{self.base_url}/openai/deployments/{deployment}/chat/completions?api-version={self.api_version}"

    def _headers(self) -> dict:
        return {"api-key": self.api_key, "Content-Type": "application/json"}


# ---------------------------------------------------------------------------
# Anthropic Adapter
# ---------------------------------------------------------------------------

_ANTHROPIC_PRICING = {
    "claude-4.5-sonnet-20250514": ModelPricing(input=3.00, output=15.00),
    "claude-4.5-opus-20250514": ModelPricing(input=15.00, output=75.00),
}


class AnthropicAdapter(BaseProviderAdapter):
    """Anthropic Messages API adapter."""

    provider = ProviderId.ANTHROPIC
    default_model = "claude-4.5-sonnet-20250514"
    default_base_url = "https://api.anthropic.com"
    api_version = "2023-06-01"
    pricing = _ANTHROPIC_PRICING
    quality_rank = 1

    def _build_request(self, request: CompletionRequest, model: str) -> tuple[str, dict, dict]:
        payload: dict = {
            "model": model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": [m.to_dict() for m in request.messages if m.role != "system"],
        }
        system = request.system_prompt
        if system:
            payload["system"] = system
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": self.api_version,
            "Content-Type": "application/json",
        }
        return f"{self.base_url}/v1/messages", headers, payload

    def _parse_response(self, data: dict) -> _ParsedCompletion:
        blocks = data["content"]
        text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        usage = data.get("usage") or {}
        return _ParsedCompletion(
            content=text,
            input_tokens=int(usage.get("input_tokens", 0)),
            output_tokens=int(usage.get("output_tokens", 0)),
            finish_reason=data.get("stop_reason") or "stop",
        )


# ---------------------------------------------------------------------------
# Vertex Adapter (Gemini on Vertex AI)
# ---------------------------------------------------------------------------

_VERTEX_PRICING = {
    "gemini-3-pro": ModelPricing(input=2.00, output=10.00),
    "gemini-2.5-flash-002": ModelPricing(input=0.10, output=0.40),
}


class VertexAdapter(BaseProviderAdapter):
    """Google Vertex AI generateContent adapter.

    A SAFETY block is an answer, not an error: the result comes back with
    empty content and ``finish_reason="SAFETY"``.
    """

    provider = ProviderId.VERTEX
    default_model = "gemini-3-pro"
    pricing = _VERTEX_PRICING
    quality_rank = 3

    def __init__(
        self,
        api_key: str = "",
        *,
        project_id: str | None = None,
        location: str | None = None,
        **kwargs,
    ):
        super().__init__(api_key, **kwargs)
        self.project_id = project_id or ""
        self.location = location or "us-central1"
        if not self.base_url:
            self.base_url = f"https://{self.location}-aiplatform.googleapis.com/v1"

    def _check_credentials(self) -> None:
        super()._check_credentials()
        if not self.project_id:
            raise AuthError("No Vertex project id configured", provider=self.provider.value)

    def _build_request(self, request: CompletionRequest, model: str) -> tuple[str, dict, dict]:
        contents = [
            {
                "role": "model" if m.role == "assistant" else "user",
                "parts": [{"text": m.content}],
            }
            for m in request.messages
            if m.role != "system"
        ]
        payload: dict = {
            "contents": contents,
            "generationConfig": {
                "maxOutputTokens": request.max_tokens,
                "temperature": request.temperature,
            },
        }
        system = request.system_prompt
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}

        url = (
            f"{self.base_url}/projects/{self.project_id}/locations/{self.location}"
            f"/publishers/google/models/{model}:generateContent"
        )
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        return url, headers, payload

    def _parse_response(self, data: dict) -> _ParsedCompletion:
        usage = data.get("usageMetadata") or {}
        input_tokens = int(usage.get("promptTokenCount", 0))
        output_tokens = int(usage.get("candidatesTokenCount", 0))

        candidates = data.get("candidates") or []
        if not candidates:
            # Prompt blocked before generation
            if (data.get("promptFeedback") or {}).get("blockReason"):
                return _ParsedCompletion("", input_tokens, output_tokens, finish_reason="SAFETY")
            raise KeyError("candidates")

        candidate = candidates[0]
        finish_reason = candidate.get("finishReason") or "STOP"
        if finish_reason == "SAFETY":
            return _ParsedCompletion("", input_tokens, output_tokens, finish_reason="SAFETY")

        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(p.get("text", "") for p in parts)
        return _ParsedCompletion(text, input_tokens, output_tokens, finish_reason=finish_reason)


# ---------------------------------------------------------------------------
# Adapter registry
# ---------------------------------------------------------------------------

ADAPTER_REGISTRY: dict[ProviderId, type[BaseProviderAdapter]] = {
    ProviderId.OPENAI: OpenAIAdapter,
    ProviderId.ANTHROPIC: AnthropicAdapter,
    ProviderId.VERTEX: VertexAdapter,
    ProviderId.GROK: GrokAdapter,
    ProviderId.COPILOT: CopilotAdapter,
}


def get_adapter(provider: ProviderId | str, api_key: str = "", **kwargs) -> BaseProviderAdapter:
    """Factory: get the appropriate adapter for a provider."""
    try:
        pid = ProviderId(provider)
    except ValueError:
        raise ValueError(f"No adapter registered for provider: {provider}") from None
    cls = ADAPTER_REGISTRY.get(pid)
    if cls is None:
        raise ValueError(f"No adapter registered for provider: {provider}")
    return cls(api_key=api_key, **kwargs)
