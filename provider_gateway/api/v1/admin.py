"""Operator API: provider health, stats, budget and runtime controls."""

from fastapi import APIRouter, Depends, HTTPException, Query

from provider_gateway.core.dependencies import get_router
from provider_gateway.gateway.router import ProviderRouter
from provider_gateway.schemas.completion import ProviderUpdate, StrategyUpdate

router = APIRouter(tags=["admin"])


def _require_provider(gateway: ProviderRouter, provider_id: str) -> None:
    if provider_id not in gateway.state.profiles:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider_id}")


@router.get("/providers/health")
async def providers_health(gateway: ProviderRouter = Depends(get_router)):
    return gateway.get_provider_health()


@router.get("/stats")
async def stats(gateway: ProviderRouter = Depends(get_router)):
    return gateway.get_stats()


@router.get("/budget")
async def budget(gateway: ProviderRouter = Depends(get_router)):
    return gateway.get_budget_status()


@router.get("/cache/analytics")
async def cache_analytics(
    limit: int = Query(100, ge=0, le=1000, description="Recent lookups to return"),
    top: int = Query(20, ge=1, le=100),
    gateway: ProviderRouter = Depends(get_router),
):
    analytics = gateway.get_cache_analytics(limit=limit, top=top)
    if analytics is None:
        raise HTTPException(status_code=404, detail="Cache analytics are disabled")
    return analytics


@router.get("/usage")
async def usage(
    start: float | None = Query(None, description="Epoch seconds"),
    end: float | None = Query(None, description="Epoch seconds"),
    gateway: ProviderRouter = Depends(get_router),
):
    return await gateway.get_usage_stats(start, end)


@router.post("/admin/strategy")
async def set_strategy(body: StrategyUpdate, gateway: ProviderRouter = Depends(get_router)):
    strategy = gateway.set_strategy(body.strategy)
    return {"strategy": strategy.value}


@router.post("/admin/providers/{provider_id}/reset")
async def reset_provider(provider_id: str, gateway: ProviderRouter = Depends(get_router)):
    _require_provider(gateway, provider_id)
    gateway.reset_circuit_breaker(provider_id)
    return {"provider": provider_id, "circuit": gateway.state.breakers[provider_id].state.value}


@router.patch("/admin/providers/{provider_id}")
async def update_provider(provider_id: str, body: ProviderUpdate, gateway: ProviderRouter = Depends(get_router)):
    _require_provider(gateway, provider_id)
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="No changes given")
    profile = gateway.update_provider_profile(provider_id, **changes)
    return {
        "provider": provider_id,
        "enabled": profile.enabled,
        "weight": profile.weight,
        "priority": profile.priority,
        "quality_rank": profile.quality_rank,
        "max_concurrent": profile.max_concurrent,
        "timeout_ms": profile.timeout_ms,
        "default_model": profile.default_model,
    }


@router.post("/admin/cleanup")
async def cleanup(gateway: ProviderRouter = Depends(get_router)):
    return await gateway.cleanup()


@router.get("/health")
async def health(gateway: ProviderRouter = Depends(get_router)):
    ledger_ok = await gateway.tracker.storage_ok()
    cache_ok = await gateway.cache.storage_ok()
    return {
        "status": "ok" if ledger_ok and cache_ok is not False else "degraded",
        "ledger": ledger_ok,
        "cache": cache_ok,
        "providers": len(gateway.state.profiles),
        "in_flight": gateway.state.in_flight,
    }
