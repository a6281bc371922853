"""Shared retry policy for every outbound provider call.

The policy retries ``TransientProviderError`` (timeouts, connection failures,
HTTP 429 and 5xx) along an exponential backoff curve with a cap. A
``PermanentProviderError`` is never retried. When attempts run out the last
transient failure surfaces as ``ProviderUnavailableError``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

import requests

from credportal.config import Settings, settings as default_settings
from credportal.domain.errors import (
    PermanentProviderError,
    ProviderUnavailableError,
    TransientProviderError,
)
from credportal.logging_config import get_logger

logger = get_logger("infra.retry")

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, (TransientProviderError, requests.Timeout, requests.ConnectionError))


def raise_for_provider_status(response: requests.Response, provider: str) -> None:
    """Classify an HTTP error response as transient or permanent."""
    if response.status_code < 400:
        return
    detail = (response.text or "")[:300]
    message = f"{provider} returned HTTP {response.status_code}: {detail}"
    if response.status_code in RETRYABLE_STATUS_CODES or response.status_code >= 500:
        raise TransientProviderError(message)
    raise PermanentProviderError(message, status_code=response.status_code)


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0
    retryable: Callable[[BaseException], bool] = is_retryable
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @classmethod
    def from_settings(cls, config: Settings | None = None, **overrides) -> "RetryPolicy":
        cfg = config or default_settings
        values = {
            "max_attempts": cfg.retry_max_attempts,
            "base_delay": cfg.retry_base_delay_seconds,
        }
        values.update(overrides)
        return cls(**values)

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based)."""
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)

    def call(self, operation: str, fn: Callable[[], T]) -> T:
        attempts = max(1, self.max_attempts)
        last_exc: BaseException | None = None
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except PermanentProviderError:
                raise
            except Exception as exc:
                if not self.retryable(exc):
                    raise
                last_exc = exc
                if attempt == attempts:
                    break
                delay = self.delay_for(attempt)
                logger.warning(
                    "Provider call failed; retrying",
                    extra={
                        "operation": operation,
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "delay_seconds": delay,
                        "error": str(exc),
                    },
                )
                self.sleep(delay)

        logger.error(
            "Provider call exhausted retries",
            extra={"operation": operation, "max_attempts": attempts, "error": str(last_exc)},
        )
        raise ProviderUnavailableError(
            f"{operation} failed after {attempts} attempts: {last_exc}",
            operation=operation,
            attempts=attempts,
        ) from last_exc
