"""
Batch pipeline runtime for syncing warehouse analytics into the relational store.

This package contains the components that run a pipeline end to end:

Modules:
    pool: Bounded warehouse client pool with health checks and idle eviction
    state: Persisted state machine with single-flight locking and recovery points
    monitor: Run metrics, error records, alert evaluation and dispatch
    runner: Orchestrator that executes configured steps with retry and backoff
    retry: Retryable/fatal error classification and backoff delays
    scheduler: Cron next-run calculation and APScheduler integration

Subpackages:
    aggregators: Calendar period bucketing of SQP records
    extractors: Warehouse query extraction through the pool
    transformers: Row parsing and period aggregation step
    loaders: Idempotent upsert of aggregates into the relational store
    alerts: Alert channels (webhook)

Architecture:
    PipelineOrchestrator.execute() locks the pipeline through the state
    manager, opens a monitored run, and executes each step in order:

    1. Extract - Query the warehouse through the connection pool
    2. Transform - Aggregate rows into weekly/monthly/quarterly/yearly periods
    3. Load - Upsert aggregates with idempotency guarantees

    Transient failures are retried with exponential backoff; completed steps
    are checkpointed so a failed run can resume. The lock is always released.

Usage:
    from pipeline.pool import ConnectionPool
    from pipeline.state import PipelineStateManager
    from pipeline.monitor import PipelineMonitor
    from pipeline.runner import PipelineOrchestrator, StepCapabilities

Example:
    pool = ConnectionPool(client_factory, max_clients=5)
    orchestrator = PipelineOrchestrator(
        config=config,
        state_manager=PipelineStateManager(config.name, session_maker),
        monitor=PipelineMonitor(config.name, session_maker, config.alert_thresholds),
        capabilities=StepCapabilities(
            extract=WarehouseExtractor(pool).extract,
            transform=PeriodTransformer().transform,
            sync=PostgresLoader(session_maker).sync,
        ),
        pool=pool,
    )

    result = await orchestrator.execute()
    print(f"{result.steps_completed}/{result.total_steps} steps, error={result.error}")

Error Handling:
    Components raise exceptions from core.exceptions with structured
    context. execute() converts every failure into PipelineResult.error.
"""

__all__ = [
    "ConnectionPool",
    "PipelineStateManager",
    "PipelineMonitor",
    "PipelineOrchestrator",
    "StepCapabilities",
    "PipelineScheduler",
    "PeriodAggregator",
]
