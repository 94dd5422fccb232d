from sqlalchemy import Column, BigInteger, Integer, String, Float, Date, DateTime, Index
from models.base import Base, utcnow


class PeriodMetric(Base):
    """
    Aggregated search query performance per calendar period.

    Sync target for the load step. Rows are derived and recomputed on every
    run, so the loader upserts on the natural key
    (period_type, period_key, query, asin).
    """
    __tablename__ = "sqp_period_metrics"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)

    # Natural key
    period_type = Column(String(20), nullable=False)
    period_key = Column(String(20), nullable=False)
    query = Column(String(500), nullable=False, index=True)
    asin = Column(String(20), nullable=False, index=True)

    period_start = Column(Date, nullable=False)
    period_end = Column(Date, nullable=False)

    # Totals
    total_impressions = Column(BigInteger, nullable=False, default=0)
    total_clicks = Column(BigInteger, nullable=False, default=0)
    total_purchases = Column(BigInteger, nullable=False, default=0)

    # Derived ratios
    avg_ctr = Column(Float, nullable=False, default=0.0)
    avg_cvr = Column(Float, nullable=False, default=0.0)
    purchases_per_impression = Column(Float, nullable=False, default=0.0)

    # Share of the (period, query) cohort
    impression_share = Column(Float, nullable=True)
    click_share = Column(Float, nullable=True)
    purchase_share = Column(Float, nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_period_metrics_key", "period_type", "period_key", "query", "asin", unique=True),
        Index("idx_period_metrics_start", "period_type", "period_start"),
    )
