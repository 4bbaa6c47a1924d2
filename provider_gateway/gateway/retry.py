"""Bounded retry with exponential backoff and jitter.

Backoff strategy:
  delay = min(initial * multiplier^attempt + jitter, max_delay)
  jitter = random(0, initial * 0.5)

A RateLimitError's Retry-After hint raises the delay floor. A provider gets
at most ``max_retries`` attempts per request; after that (or when the next
wait would run past the request deadline) the last error is raised and the
router fails over. Clock and sleep are injectable so tests never wait.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, TypeVar

from provider_gateway.gateway.config import RetryConfig
from provider_gateway.gateway.errors import (
    DeadlineExceededError,
    GatewayError,
    ProviderTimeoutError,
    RateLimitError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def calculate_backoff(attempt: int, config: RetryConfig, rng: random.Random | None = None) -> float:
    """Delay in seconds before retry number ``attempt + 1`` (attempt is 0-based)."""
    rng = rng or random
    initial = config.initial_delay_ms / 1000
    exponential = initial * (config.backoff_multiplier**attempt)
    jitter = rng.uniform(0, initial * 0.5)
    return min(exponential + jitter, config.max_delay_ms / 1000)


class RetryCoordinator:
    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.config = config or RetryConfig()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

    def remaining(self, deadline: float) -> float:
        return deadline - self._clock()

    async def run(
        self,
        provider: str,
        call: Callable[[float], Awaitable[T]],
        *,
        deadline: float,
        attempt_timeout: float,
    ) -> tuple[T, int]:
        """Run ``call(timeout)`` against one provider until it succeeds.

        Returns ``(result, attempts)``. Raises the last retryable error once
        the provider's attempts are used up, a non-retryable error at once,
        or DeadlineExceededError if the deadline passed before an attempt.
        """
        last_error: GatewayError | None = None
        max_attempts = self.config.max_retries

        for attempt in range(max_attempts):
            remaining = self.remaining(deadline)
            if remaining <= 0:
                raise DeadlineExceededError(
                    f"Deadline exceeded before attempt {attempt + 1} on {provider}",
                    provider=provider,
                    attempts=attempt,
                    cause=last_error,
                )

            timeout = min(attempt_timeout, remaining)
            try:
                result = await asyncio.wait_for(call(timeout), timeout=timeout)
                return result, attempt + 1
            except asyncio.TimeoutError as e:
                error: GatewayError = ProviderTimeoutError(
                    f"{provider} attempt timed out after {timeout:.1f}s",
                    provider=provider,
                    cause=e,
                )
            except GatewayError as e:
                error = e

            error.attempts = attempt + 1
            if error.provider is None:
                error.provider = provider
            if not error.retryable:
                raise error
            last_error = error

            if attempt + 1 >= max_attempts:
                break

            delay = calculate_backoff(attempt, self.config, self._rng)
            if isinstance(error, RateLimitError) and error.retry_after:
                delay = max(delay, error.retry_after)
            if delay >= self.remaining(deadline):
                logger.info("Not retrying %s: backoff %.1fs would pass the deadline", provider, delay)
                break

            logger.info(
                "Retry %d/%d for %s in %.1fs (%s)",
                attempt + 1,
                max_attempts - 1,
                provider,
                delay,
                error.code,
            )
            await self._sleep(delay)

        assert last_error is not None
        raise last_error
