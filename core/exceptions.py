"""
Custom exceptions for the sync pipeline with structured error context.

This module provides the exception hierarchy used by the connection pool,
the step orchestrator, the state manager and the monitor. Each exception
carries context information for debugging and monitoring.

Exception Hierarchy:
    PipelineException (base)
    ├── ConnectionPoolError
    │   ├── ConnectionTimeoutError
    │   ├── PoolClosedError
    │   └── ClientCreationError
    ├── QueryError
    │   └── QueryCostExceededError
    ├── StepExecutionError
    ├── ValidationError
    ├── LoadError
    ├── LockConflictError
    ├── StateTransitionError
    ├── AlertDispatchError
    ├── ShutdownRequestedError
    └── RetryableError / NonRetryableError (retry strategy)
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class PipelineException(Exception):
    """
    Base exception for all pipeline-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (step, run id, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.now(timezone.utc)

        # Add timestamp to context
        self.context["error_timestamp"] = self.timestamp.isoformat()

        # Chain original exception if provided
        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(PipelineException):
    """
    Errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts and connection resets
    - Quota or rate limiting responses
    - Warehouse service unavailable
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        code: Optional[str] = None
    ):
        super().__init__(message, context, original_exception)
        self.code = code
        if code:
            self.context["code"] = code


class NonRetryableError(PipelineException):
    """
    Errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures
    - Permission denials
    - Malformed queries
    """
    pass


# ============================================================================
# Connection Pool Errors
# ============================================================================

class ConnectionPoolError(PipelineException):
    """Base exception for warehouse connection pool failures."""
    pass


class ConnectionTimeoutError(ConnectionPoolError):
    """
    Raised when no client could be acquired within the acquire timeout.

    Context should include:
        - acquire_timeout_ms: The configured timeout
        - pool_size: Number of clients at the time of failure
    """
    pass


class PoolClosedError(ConnectionPoolError):
    """Raised when acquiring from a pool that has been closed."""
    pass


class ClientCreationError(ConnectionPoolError):
    """The client factory failed to create a warehouse client."""
    pass


# ============================================================================
# Query Errors
# ============================================================================

class QueryError(NonRetryableError):
    """
    Exception raised for malformed SQL or permission denial in the warehouse.

    Context should include:
        - sql: The statement (truncated if large)
        - code: Warehouse error code (if available)
    """
    pass


class QueryCostExceededError(QueryError):
    """
    Exception raised when a dry-run cost estimate exceeds the configured budget.

    Context should include:
        - estimated_bytes: Bytes the query would scan
        - estimated_cost_usd: Estimated cost
        - max_bytes / max_cost_usd: The configured limits
    """
    pass


# ============================================================================
# Step Errors
# ============================================================================

class StepExecutionError(PipelineException):
    """
    Terminal failure of a pipeline step after retries or a fatal error.

    Attributes:
        step_name: Name of the failed step
        attempts: Number of attempts made
    """

    def __init__(
        self,
        message: str,
        step_name: str,
        attempts: int = 1,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message, context, original_exception)
        self.step_name = step_name
        self.attempts = attempts


class ValidationError(NonRetryableError):
    """
    Exception raised when the data-quality gate rejects the final output.

    Context should include:
        - invalid_records: Number of records that failed the checks
        - sample: A few offending records
    """
    pass


class LoadError(PipelineException):
    """
    Exception raised when syncing data to the relational store fails.

    Context should include:
        - table_name: Target table
        - records_to_load: Number of records in the batch
    """
    pass


# ============================================================================
# State and Coordination Errors
# ============================================================================

class LockConflictError(NonRetryableError):
    """Another run already holds the pipeline lock."""
    pass


class StateTransitionError(NonRetryableError):
    """
    Illegal pipeline status transition.

    Context should include:
        - from_status: Current status
        - to_status: Requested status
    """
    pass


class ShutdownRequestedError(NonRetryableError):
    """Raised at a step boundary once shutdown has been requested."""
    pass


class AlertDispatchError(PipelineException):
    """Alert channel failed to deliver an alert. Logged, never escalated."""
    pass


# ============================================================================
# Specific Retryable Errors
# ============================================================================

class NetworkError(RetryableError):
    """Network-related errors that should be retried."""
    pass


class QuotaExceededError(RetryableError):
    """Quota or rate limiting errors that should be retried with backoff."""
    pass


class StepTimeoutError(RetryableError):
    """A step capability exceeded its configured timeout."""
    pass


# ============================================================================
# Specific Non-Retryable Errors
# ============================================================================

class AuthenticationError(NonRetryableError):
    """Authentication failures that should not be retried."""
    pass


class PermissionDeniedError(NonRetryableError):
    """Permission denials that should not be retried."""
    pass
