"""
Unit tests for retry classification and backoff
"""

import asyncio

from core.exceptions import (
    AuthenticationError,
    LockConflictError,
    NetworkError,
    PermissionDeniedError,
    PoolClosedError,
    QueryError,
    QuotaExceededError,
    StepTimeoutError,
    ValidationError,
)
from pipeline.retry import backoff_delay_ms, classify_error, is_retryable


class CodedError(Exception):
    def __init__(self, message, code):
        super().__init__(message)
        self.code = code


class TestClassifyError:

    def test_typed_errors(self):
        assert classify_error(NetworkError("socket closed")) == "retryable"
        assert classify_error(StepTimeoutError("slow")) == "retryable"
        assert classify_error(QuotaExceededError("slow down", code="RESOURCE_EXHAUSTED")) == "retryable"
        assert classify_error(PermissionDeniedError("no access to dataset")) == "fatal"
        assert classify_error(ValidationError("bad records")) == "fatal"
        assert classify_error(LockConflictError("already running")) == "fatal"
        assert classify_error(PoolClosedError("Connection pool is closed")) == "fatal"
        assert classify_error(AuthenticationError("bad token")) == "fatal"
        assert classify_error(QueryError("syntax error")) == "fatal"
        assert classify_error(PermissionError("nope")) == "fatal"
        assert classify_error(ConnectionResetError()) == "retryable"
        assert classify_error(asyncio.TimeoutError()) == "retryable"

    def test_codes_and_messages(self):
        assert classify_error(CodedError("socket hang up", "ECONNRESET")) == "retryable"
        assert classify_error(Exception("Quota exceeded for project")) == "retryable"
        assert classify_error(Exception("503 Service Unavailable")) == "retryable"
        assert classify_error(CodedError("request failed", "UNAUTHENTICATED")) == "fatal"
        assert classify_error(Exception("Access Denied: table sqp")) == "fatal"

    def test_fatal_marker_wins(self):
        assert classify_error(Exception("permission denied after timeout")) == "fatal"

    def test_unknown_errors_are_retried(self):
        error = ValueError("something odd")
        assert classify_error(error) == "unknown"
        assert is_retryable(error) is True
        assert is_retryable(Exception("Forbidden")) is False


class TestBackoff:

    def test_exponential_growth(self):
        assert [backoff_delay_ms(n, 1_000) for n in (1, 2, 3, 4)] == [1_000, 2_000, 4_000, 8_000]

    def test_capped(self):
        assert backoff_delay_ms(10, 1_000, max_delay_ms=5_000) == 5_000
        assert backoff_delay_ms(20, 1_000, max_delay_ms=None) == 1_000 * 2 ** 19
