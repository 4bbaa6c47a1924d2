from __future__ import annotations

from collections import Counter
from typing import AsyncGenerator, Callable
from unittest.mock import AsyncMock

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from provider_gateway.core.config import settings

# Override settings for tests
settings.app_env = "test"
settings.sentry_dsn = ""

from provider_gateway.gateway.router import ProviderRouter  # noqa: E402
from provider_gateway.main import app  # noqa: E402

HOSTS = {
    "api.openai.com": "openai",
    "api.anthropic.com": "anthropic",
    "us-central1-aiplatform.googleapis.com": "vertex",
    "api.x.ai": "grok",
    "copilot.openai.azure.com": "copilot",
}

PROVIDER_CONFIG = {
    "openai": {"api_key": "sk-test"},
    "anthropic": {"api_key": "sk-ant-test"},
    "vertex": {"api_key": "ya29.test", "project_id": "demo-project"},
    "grok": {"api_key": "xai-test"},
    "copilot": {
        "api_key": "azure-test",
        "endpoint": "https://copilot.openai.azure.com",
        "deployment": "gpt4-deploy",
    },
}


# ==========================================================================
# Provider response bodies
# ==========================================================================


def openai_body(content: str = "Hello!", prompt_tokens: int = 10, completion_tokens: int = 5, finish_reason="stop"):
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "choices": [{"index": 0, "message": {"role": "assistant", "content": content}, "finish_reason": finish_reason}],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def anthropic_body(content: str = "Hello!", input_tokens: int = 10, output_tokens: int = 5, stop_reason="end_turn"):
    return {
        "id": "msg_test",
        "type": "message",
        "role": "assistant",
        "content": [{"type": "text", "text": content}],
        "stop_reason": stop_reason,
        "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
    }


def vertex_body(content: str = "Hello!", prompt_tokens: int = 10, candidate_tokens: int = 5, finish_reason="STOP"):
    return {
        "candidates": [{"content": {"role": "model", "parts": [{"text": content}]}, "finishReason": finish_reason}],
        "usageMetadata": {
            "promptTokenCount": prompt_tokens,
            "candidatesTokenCount": candidate_tokens,
            "totalTokenCount": prompt_tokens + candidate_tokens,
        },
    }


def success_body(provider: str, content: str = "Hello!", input_tokens: int = 10, output_tokens: int = 5) -> dict:
    if provider == "anthropic":
        return anthropic_body(content, input_tokens, output_tokens)
    if provider == "vertex":
        return vertex_body(content, input_tokens, output_tokens)
    return openai_body(content, input_tokens, output_tokens)


# ==========================================================================
# Fake provider backend
# ==========================================================================


class FakeProviders:
    """httpx.MockTransport handler that answers per provider.

    ``responses[provider]`` is a callable ``(request) -> httpx.Response``;
    unset providers answer with a default success.
    """

    def __init__(self):
        self.calls: Counter[str] = Counter()
        self.requests: list[tuple[str, httpx.Request]] = []
        self.responses: dict[str, Callable[[httpx.Request], httpx.Response]] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        provider = HOSTS[request.url.host]
        self.calls[provider] += 1
        self.requests.append((provider, request))
        answer = self.responses.get(provider)
        if answer is None:
            return httpx.Response(200, json=success_body(provider, content=f"answer from {provider}"))
        return answer(request)

    def fail(self, provider: str, status: int = 500, headers: dict | None = None) -> None:
        self.responses[provider] = lambda _req: httpx.Response(
            status, json={"error": {"message": "boom"}}, headers=headers
        )

    def succeed(self, provider: str, **kwargs) -> None:
        self.responses[provider] = lambda _req: httpx.Response(200, json=success_body(provider, **kwargs))

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def fake_providers() -> FakeProviders:
    return FakeProviders()


@pytest.fixture
def no_sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
async def make_router(fake_providers, no_sleep):
    """Build routers wired to the fake providers; all are shut down afterwards."""
    routers: list[ProviderRouter] = []

    def _make(providers: list[str] | None = None, **overrides) -> ProviderRouter:
        names = providers or ["openai", "anthropic"]
        config = {
            "providers": {name: dict(PROVIDER_CONFIG[name]) for name in names},
            "enable_health_monitoring": False,
            "seed": 7,
        }
        provider_overrides = overrides.pop("provider_overrides", {})
        clock = overrides.pop("clock", None)
        for name, extra in provider_overrides.items():
            config["providers"][name].update(extra)
        config.update(overrides)
        kwargs = {"clock": clock} if clock is not None else {}
        router = ProviderRouter(config, transport=fake_providers.transport, sleep=no_sleep, **kwargs)
        routers.append(router)
        return router

    yield _make

    for router in routers:
        await router.shutdown(drain_timeout=1)


@pytest.fixture
def gateway(make_router):
    """Router served by the API app for the duration of a test."""
    router = make_router()
    app.state.router = router
    yield router
    del app.state.router


@pytest.fixture
async def client(gateway) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
