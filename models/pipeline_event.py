from sqlalchemy import Column, BigInteger, Integer, String, DateTime, Text, Index
from models.base import Base, JSONType, utcnow


class PipelineErrorRecord(Base):
    """Append-only record of every step or orchestrator error"""
    __tablename__ = "pipeline_errors"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    pipeline_id = Column(String(100), nullable=False, index=True)
    run_id = Column(String(36), nullable=True, index=True)
    step = Column(String(100), nullable=False)
    error = Column(Text, nullable=False)
    stack = Column(Text, nullable=True)
    context = Column(JSONType, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)


class PipelineLogRecord(Base):
    """Warning and error log entries kept for audit"""
    __tablename__ = "pipeline_logs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    pipeline_id = Column(String(100), nullable=False, index=True)
    run_id = Column(String(36), nullable=True, index=True)
    level = Column(String(10), nullable=False, index=True)
    message = Column(Text, nullable=False)
    log_metadata = Column("metadata", JSONType, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)

    __table_args__ = (
        Index("idx_logs_pipeline_timestamp", "pipeline_id", "timestamp"),
    )
