"""Optional Sentry error tracking.

Enabled when SENTRY_DSN is set. Gateway errors that are part of normal
operation (budget rejections, a full queue, upstream rate limits) are not
reported; provider outages and unexpected exceptions are.
"""

import logging

from provider_gateway.core.config import settings
from provider_gateway.gateway.errors import BudgetExceededError, GatewayError, QueueFullError, RateLimitError

logger = logging.getLogger(__name__)

EXPECTED_ERRORS = (BudgetExceededError, QueueFullError, RateLimitError)


def before_send(event: dict, hint: dict) -> dict | None:
    exc_info = hint.get("exc_info")
    if exc_info and isinstance(exc_info[1], EXPECTED_ERRORS):
        return None
    if exc_info and isinstance(exc_info[1], GatewayError):
        error = exc_info[1]
        event.setdefault("tags", {}).update({"gateway.error": error.code, "gateway.provider": error.provider or "none"})
    return event


def init_sentry() -> bool:
    """Initialize Sentry if SENTRY_DSN is configured. Returns True if enabled."""
    if not settings.sentry_dsn:
        logger.debug("Sentry DSN not configured, skipping")
        return False

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        release="provider-gateway@1.0.0",
        traces_sample_rate=0.1 if settings.app_env == "production" else 1.0,
        send_default_pii=False,
        before_send=before_send,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
        ],
    )
    logger.info("Sentry initialized (env=%s)", settings.app_env)
    return True
