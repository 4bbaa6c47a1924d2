import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from provider_gateway.api.v1.router import api_v1_router
from provider_gateway.core.config import settings, validate_settings_for_production
from provider_gateway.core.logging import setup_logging
from provider_gateway.core.metrics import PrometheusMiddleware, metrics_response
from provider_gateway.core.sentry import init_sentry
from provider_gateway.gateway.config import RouterConfig
from provider_gateway.gateway.errors import (
    AllProvidersUnavailableError,
    AuthError,
    BudgetExceededError,
    DeadlineExceededError,
    GatewayError,
    InvalidResponseError,
    ProviderUnavailableError,
    QueueFullError,
    RateLimitError,
)
from provider_gateway.gateway.router import ProviderRouter

# Configure logging before anything else
setup_logging()
init_sentry()

logger = logging.getLogger(__name__)

# Most specific first; first match wins
ERROR_STATUS: list[tuple[type[GatewayError], int]] = [
    (BudgetExceededError, 402),
    (QueueFullError, 429),
    (DeadlineExceededError, 504),
    (AuthError, 502),
    (InvalidResponseError, 502),
    (RateLimitError, 503),
    (ProviderUnavailableError, 503),
    (AllProvidersUnavailableError, 503),
]


def status_for(exc: GatewayError) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 502


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    if settings.app_env != "test":
        validate_settings_for_production()
    logger.info("Starting provider gateway...")

    router = getattr(app.state, "router", None)
    if router is None:
        router = ProviderRouter(RouterConfig.from_settings(settings))
        app.state.router = router
    await router.start()

    yield

    # Shutdown
    await router.shutdown()
    logger.info("Provider gateway shut down")


app = FastAPI(
    title="Provider Gateway",
    description="Routes completion requests across AI providers",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.app_debug else None,
    redoc_url="/api/redoc" if settings.app_debug else None,
)


@app.exception_handler(GatewayError)
async def _gateway_error_handler(request: Request, exc: GatewayError):
    status = status_for(exc)
    headers = {}
    if isinstance(exc, RateLimitError) and exc.retry_after:
        headers["Retry-After"] = str(int(exc.retry_after))
    return JSONResponse(status_code=status, content={"detail": exc.to_dict()}, headers=headers)


@app.exception_handler(ValueError)
async def _value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# Log unhandled exceptions with the full traceback
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(status_code=500, content={"detail": f"{type(exc).__name__}: {exc}"})


app.add_middleware(PrometheusMiddleware)

# API routes
app.include_router(api_v1_router)


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()
