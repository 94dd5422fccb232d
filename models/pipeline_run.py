from sqlalchemy import Column, BigInteger, Integer, String, Enum, DateTime, Text, Index
from models.base import Base, JSONType, RunStatus, utcnow


class PipelineRunMetrics(Base):
    """
    Tracks metrics for each pipeline execution.

    Purpose:
    - Audit trail of all runs
    - Error rate over recent runs (alerting)
    - Duration baseline for anomaly detection
    """
    __tablename__ = "pipeline_metrics"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    run_id = Column(String(36), unique=True, nullable=False, index=True)
    pipeline_id = Column(String(100), nullable=False, index=True)

    status = Column(Enum(RunStatus, native_enum=False, length=20),
                    default=RunStatus.RUNNING, nullable=False, index=True)

    # Timestamps
    start_time = Column(DateTime, nullable=False, default=utcnow)
    end_time = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    # Latest attempt per step: {step_name: {duration_ms, records_processed, success}}
    steps = Column(JSONType, nullable=False, default=dict)
    total_records_processed = Column(Integer, default=0)

    error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    __table_args__ = (
        Index("idx_metrics_pipeline_created", "pipeline_id", "created_at"),
    )
