"""
Core utilities and configuration for the SQP sync pipeline.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Engine and session factory construction
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.database import create_engine, create_session_maker
    from core.exceptions import ConnectionTimeoutError, RetryableError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Build the metadata store session factory
    engine = create_engine()
    session_maker = create_session_maker(engine)
"""

__all__ = [
    "settings",
    "create_engine",
    "create_session_maker",
    "setup_logging",
    # Exceptions
    "PipelineException",
    "RetryableError",
    "NonRetryableError",
    "ConnectionPoolError",
    "ConnectionTimeoutError",
    "PoolClosedError",
    "QueryError",
    "QueryCostExceededError",
    "StepExecutionError",
    "ValidationError",
    "LoadError",
    "LockConflictError",
    "StateTransitionError",
    "ShutdownRequestedError",
    "AlertDispatchError",
    "NetworkError",
    "QuotaExceededError",
    "StepTimeoutError",
    "AuthenticationError",
    "PermissionDeniedError",
]
