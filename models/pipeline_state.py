from sqlalchemy import Column, BigInteger, Integer, String, Enum, DateTime, Index
from models.base import Base, JSONType, PipelineStatus, utcnow


class PipelineStateRecord(Base):
    """
    Persisted state of one pipeline.

    Purpose:
    - Single source of truth for run status
    - Lock ownership for single-flight execution
    - Step outputs for resume-on-failure

    Design:
    - One row per pipeline_id
    - version is bumped on every write and used as the compare-and-set
      token when acquiring the lock
    """
    __tablename__ = "pipeline_states"

    pipeline_id = Column(String(100), primary_key=True)

    # Status
    status = Column(Enum(PipelineStatus, native_enum=False, length=20),
                    default=PipelineStatus.IDLE, nullable=False, index=True)
    last_run_status = Column(Enum(PipelineStatus, native_enum=False, length=20), nullable=True)
    current_step = Column(String(100), nullable=True)

    # Run timestamps
    last_run_time = Column(DateTime, nullable=True)
    last_success_time = Column(DateTime, nullable=True)

    # Lock ownership
    lock_id = Column(String(36), nullable=True)
    locked_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False, default=0)

    # Payloads
    step_data = Column(JSONType, nullable=False, default=dict)
    state_metadata = Column("metadata", JSONType, nullable=False, default=dict)

    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class PipelineTransition(Base):
    """Append-only history of status changes"""
    __tablename__ = "pipeline_transitions"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    pipeline_id = Column(String(100), nullable=False, index=True)
    from_status = Column(Enum(PipelineStatus, native_enum=False, length=20), nullable=False)
    to_status = Column(Enum(PipelineStatus, native_enum=False, length=20), nullable=False)
    timestamp = Column(DateTime, nullable=False, default=utcnow, index=True)
    transition_metadata = Column("metadata", JSONType, nullable=True)

    __table_args__ = (
        Index("idx_transition_pipeline_timestamp", "pipeline_id", "timestamp"),
    )
