"""
Retry classification and backoff for pipeline steps.

Errors raised by step capabilities are opaque to the orchestrator. They are
classified here by type first, then by the `code` attribute warehouse and
HTTP clients attach, and finally by message text.
"""

import asyncio
from typing import Optional

from core.exceptions import NonRetryableError, PoolClosedError, RetryableError

# Substrings matched against lower-cased codes and messages
RETRYABLE_MARKERS = (
    "enetwork",
    "econnreset",
    "econnrefused",
    "etimedout",
    "network",
    "timeout",
    "timed out",
    "quota",
    "rate limit",
    "ratelimit",
    "rate_limit",
    "too many requests",
    "unavailable",
    "deadline_exceeded",
    "resource_exhausted",
)

FATAL_MARKERS = (
    "unauthenticated",
    "authentication",
    "permission",
    "forbidden",
    "invalid credentials",
    "invalid_grant",
    "access denied",
)


def _error_code(error: BaseException) -> str:
    code = getattr(error, "code", None)
    return str(code).lower() if code is not None else ""


def classify_error(error: BaseException) -> str:
    """
    Classify a failed step attempt as "retryable", "fatal" or "unknown".

    Fatal markers win over retryable ones so that e.g. a "permission denied"
    message from a generic client error is never retried.
    """
    if isinstance(error, RetryableError):
        return "retryable"
    if isinstance(error, (NonRetryableError, PoolClosedError, PermissionError)):
        return "fatal"
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return "retryable"

    text = f"{_error_code(error)} {error}".lower()
    if any(marker in text for marker in FATAL_MARKERS):
        return "fatal"
    if any(marker in text for marker in RETRYABLE_MARKERS):
        return "retryable"
    return "unknown"


def is_retryable(error: BaseException) -> bool:
    """Unknown errors are treated as transient and retried"""
    return classify_error(error) != "fatal"


def backoff_delay_ms(attempt: int, retry_delay_ms: int, max_delay_ms: Optional[int] = 60_000) -> int:
    """
    Exponential backoff before retry number `attempt` (1-based).

    min(retry_delay_ms * 2 ** (attempt - 1), max_delay_ms)
    """
    delay = retry_delay_ms * (2 ** max(attempt - 1, 0))
    if max_delay_ms is not None:
        delay = min(delay, max_delay_ms)
    return int(delay)
