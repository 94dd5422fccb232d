"""
Pydantic schemas for data validation and serialization.

This package defines Pydantic models used throughout the pipeline:

Schemas:
    pipeline: Pipeline configuration, state snapshots, alerts and run results
    metrics: Search query performance records, period aggregates and
             period-over-period comparisons

Features:
    - Automatic data validation
    - Type coercion and conversion
    - JSON serialization for step payloads and sink rows

Usage:
    from schemas.pipeline import PipelineConfig, PipelineStep, PipelineResult
    from schemas.metrics import SQPRecord, AggregatedMetrics

Example:
    config = PipelineConfig(
        name="sqp-weekly",
        schedule="0 */6 * * *",
        steps=[
            PipelineStep(name="extract", type="extract", config={"sql": "..."}),
            PipelineStep(name="transform", type="transform", dependencies=["extract"]),
        ],
    )

    # Pydantic rejects duplicate step names and forward dependencies
    assert config.step_names == ["extract", "transform"]
"""

__all__ = [
    "AlertThresholds",
    "PipelineStep",
    "PipelineConfig",
    "PipelineState",
    "RecoveryPoint",
    "StepMetrics",
    "StepResult",
    "Alert",
    "PipelineResult",
    "SQPRecord",
    "AggregatedMetrics",
    "PeriodComparison",
]
