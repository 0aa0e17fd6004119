"""
Retry and timeout helpers for provider calls.

Classification:
- retryable:     connection resets, timeouts, DNS failures, HTTP 408/429/5xx,
                 and messages that read like a transient outage
- not retryable: validation, auth (401/403), other 4xx, anything else

Usage:
    policy = RetryPolicy.from_config(config)
    task_id = retry_with_backoff(lambda: meshy.submit(image_url), policy, label="meshy.submit")
"""

from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

import requests

from forge3d.errors import (
    AuthenticationError,
    Forge3DError,
    OperationTimeout,
    ProviderRequestError,
    TransientProviderError,
    ValidationError,
)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

RETRYABLE_MESSAGE_KEYWORDS = (
    "timeout",
    "connection",
    "network",
    "temporary",
    "rate limit",
    "too many requests",
    "service unavailable",
    "internal server error",
    "bad gateway",
    "gateway timeout",
)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: float = 0.1

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            max_retries=config.RETRY_MAX_RETRIES,
            initial_delay=config.RETRY_INITIAL_DELAY,
            max_delay=config.RETRY_MAX_DELAY,
            multiplier=config.RETRY_BACKOFF_MULTIPLIER,
            jitter=config.RETRY_JITTER,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (0-based), jittered by +/- jitter."""
        base = min(self.initial_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter:
            base += base * self.jitter * (random.random() * 2 - 1)
        return max(0.0, base)


def is_retryable_error(exc: BaseException) -> bool:
    """True if repeating the call that raised `exc` may succeed."""
    if isinstance(exc, (ValidationError, AuthenticationError)):
        return False
    if isinstance(exc, OperationTimeout):
        return True
    if isinstance(exc, Forge3DError):
        if exc.retryable:
            return True
        status = getattr(exc, "status_code", None)
        return status in RETRYABLE_STATUS_CODES
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    message = str(exc).lower()
    return any(keyword in message for keyword in RETRYABLE_MESSAGE_KEYWORDS)


def is_resubmittable_error(exc: BaseException) -> bool:
    """
    Retry classification for calls that create a provider task. A call that
    timed out after the request went out may already have started a billed
    task upstream, so it is not sent again.
    """
    if isinstance(exc, (OperationTimeout, requests.ReadTimeout)):
        print(f"[RETRY] Not resubmitting after {type(exc).__name__}: the provider may already have the task")
        return False
    return is_retryable_error(exc)


def retry_with_backoff(
    fn: Callable[[], T],
    policy: RetryPolicy = RetryPolicy(),
    label: str = "call",
    should_retry: Callable[[BaseException], bool] = is_retryable_error,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn() and retry transient failures up to policy.max_retries times.
    The last error is re-raised unchanged once retries are exhausted.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except Exception as e:
            if attempt >= policy.max_retries or not should_retry(e):
                raise
            delay = policy.delay_for(attempt)
            attempt += 1
            print(
                f"[RETRY] {label} failed ({type(e).__name__}: {e}); "
                f"retry {attempt}/{policy.max_retries} in {delay:.2f}s"
            )
            sleep(delay)


def with_timeout(fn: Callable[[], T], seconds: Optional[float], message: str = "Operation timed out") -> T:
    """
    Run fn() with a wall-clock bound; raises OperationTimeout when exceeded.

    Each call gets its own daemon thread, so the bound covers only fn() itself.
    A call that outlives its bound keeps running in the background and its
    result is discarded.
    """
    if not seconds or seconds <= 0:
        return fn()

    outcome = {}

    def _run():
        try:
            outcome["value"] = fn()
        except BaseException as e:
            outcome["error"] = e

    worker = threading.Thread(target=_run, name="timeout_guard", daemon=True)
    worker.start()
    worker.join(seconds)
    if worker.is_alive():
        raise OperationTimeout(message, timeout_seconds=seconds)
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


def raise_for_provider_status(response: requests.Response, provider: str, action: str) -> None:
    """
    Translate a non-2xx provider response into the error taxonomy.
    401/403 -> AuthenticationError, 408/429/5xx -> TransientProviderError,
    other 4xx -> ProviderRequestError.
    """
    if response.ok:
        return
    status = response.status_code
    body = (response.text or "")[:500]
    message = f"{provider} {action} -> {status}: {body}"
    if status in (401, 403):
        raise AuthenticationError(f"{provider} authentication failed. Check API credentials.")
    if status in RETRYABLE_STATUS_CODES or status >= 500:
        raise TransientProviderError(message, status_code=status)
    raise ProviderRequestError(message, status_code=status)
