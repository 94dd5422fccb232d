from sqlalchemy import Column, String, DateTime
from models.base import Base, utcnow


class PipelineMetadataEntry(Base):
    """
    Key/value watermarks per pipeline.

    Purpose:
    - Track data freshness (last successful refresh)
    - Other per-pipeline watermarks that outlive a single run

    Design:
    - One row per (pipeline_id, key)
    """
    __tablename__ = "pipeline_metadata"

    pipeline_id = Column(String(100), primary_key=True)
    key = Column(String(100), primary_key=True)
    value = Column(String(255), nullable=False)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
