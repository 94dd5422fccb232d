"""
SQLAlchemy ORM models for database tables.

This package defines the database schema using SQLAlchemy ORM models:

Models:
    base: Base declarative class, JSON column type and shared enums
          (PipelineStatus, RunStatus, StepType, PeriodType, AlertType, ...)
    pipeline_state: One state row per pipeline plus transition history
    pipeline_run: Per-run metrics
    pipeline_event: Error and log records
    pipeline_metadata: Key/value watermarks such as data freshness
    period_metrics: Aggregated period metrics (sync target)

Usage:
    from models import PipelineStateRecord, PipelineRunMetrics
    from models.base import PipelineStatus, PeriodType

Importing this package registers every table on Base.metadata, which is
what scripts/init_db.py and the test fixtures rely on.
"""

from models.base import Base
from models.pipeline_state import PipelineStateRecord, PipelineTransition
from models.pipeline_run import PipelineRunMetrics
from models.pipeline_event import PipelineErrorRecord, PipelineLogRecord
from models.pipeline_metadata import PipelineMetadataEntry
from models.period_metrics import PeriodMetric

__all__ = [
    "Base",
    "PipelineStateRecord",
    "PipelineTransition",
    "PipelineRunMetrics",
    "PipelineErrorRecord",
    "PipelineLogRecord",
    "PipelineMetadataEntry",
    "PeriodMetric",
]
