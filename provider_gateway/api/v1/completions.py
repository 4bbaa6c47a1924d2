"""Completions API: single-prompt routing and chat completions."""

from fastapi import APIRouter, Depends

from provider_gateway.core.dependencies import get_router
from provider_gateway.gateway.router import ProviderRouter
from provider_gateway.schemas.completion import (
    ChatCompletionRequest,
    ChatCompletionResponse,
    RouteRequest,
    RouteResponse,
)

router = APIRouter(tags=["completions"])


@router.post("/route", response_model=RouteResponse)
async def route_prompt(body: RouteRequest, gateway: ProviderRouter = Depends(get_router)):
    result = await gateway.route(
        body.prompt,
        model=body.model,
        provider=body.provider,
        priority=body.priority,
        max_tokens=body.max_tokens,
        temperature=body.temperature,
        user_id=body.user_id,
        quality_ranks=body.quality_ranks,
    )
    return result.to_dict()


@router.post("/chat/completions", response_model=ChatCompletionResponse)
async def chat_completions(body: ChatCompletionRequest, gateway: ProviderRouter = Depends(get_router)):
    result = await gateway.create_chat_completion(
        [m.model_dump() for m in body.messages],
        max_tokens=body.max_tokens,
        provider=body.provider,
        model=body.model,
        temperature=body.temperature,
        priority=body.priority,
        user_id=body.user_id,
        quality_ranks=body.quality_ranks,
    )
    return result.to_dict()
