from fastapi import Request

from provider_gateway.gateway.router import ProviderRouter


def get_router(request: Request) -> ProviderRouter:
    """The ProviderRouter built in the app lifespan."""
    return request.app.state.router
