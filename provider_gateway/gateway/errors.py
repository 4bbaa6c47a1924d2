"""Gateway error taxonomy.

Errors are classified once, at the adapter boundary, and never reclassified
downstream. ``retryable`` tells the retry coordinator whether the same
provider may be tried again.
"""

from __future__ import annotations


class GatewayError(Exception):
    """Base class for all gateway errors."""

    retryable: bool = False
    code: str = "gateway_error"

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        attempts: int = 0,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.attempts = attempts
        self.cause = cause

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "provider": self.provider,
            "attempts": self.attempts,
        }


# --- Adapter-level (classified at the boundary) ---


class AuthError(GatewayError):
    """Credential or configuration problem. Never retried."""

    code = "auth_error"


class RateLimitError(GatewayError):
    """Provider answered 429. ``retry_after`` is the provider's hint in seconds."""

    retryable = True
    code = "rate_limited"

    def __init__(self, message: str, *, retry_after: float | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ProviderTimeoutError(GatewayError):
    """Timed out, or the connection dropped before a response was received."""

    retryable = True
    code = "timeout"


class ProviderUnavailableError(GatewayError):
    """Network failure or 5xx."""

    retryable = True
    code = "provider_unavailable"


class InvalidResponseError(GatewayError):
    """Malformed payload or a 4xx the request cannot recover from."""

    code = "invalid_response"


# --- Router-level ---


class CircuitOpenError(GatewayError):
    """Internal signal: the breaker denied the attempt."""

    code = "circuit_open"


class AllProvidersUnavailableError(GatewayError):
    """Every candidate was denied or exhausted."""

    code = "all_providers_unavailable"

    def __init__(self, message: str, *, errors: dict[str, GatewayError] | None = None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = errors or {}

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["providers"] = {pid: err.code for pid, err in self.errors.items()}
        return data


class BudgetExceededError(GatewayError):
    """Hard-stop budget reached for a non-critical request."""

    code = "budget_exceeded"


class QueueFullError(GatewayError):
    """Too many requests are waiting for a provider slot."""

    code = "queue_full"


class DeadlineExceededError(GatewayError):
    """The global per-request deadline expired."""

    code = "deadline_exceeded"
