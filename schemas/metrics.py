"""
Pydantic schemas for search query performance records and their aggregates
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, Dict, Any
from datetime import date, datetime
from models.base import PeriodType


def to_calendar_date(value: Any) -> date:
    """
    Coerce a record date to the calendar date it falls on.

    Aware datetimes keep their own offset, so a record stamped
    2024-03-10T23:30-05:00 stays on March 10 whatever the DST rules of
    the machine running the pipeline are.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        if len(text) == 10:
            return date.fromisoformat(text)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return datetime.fromisoformat(text).date()
    raise ValueError(f"Unsupported date value: {value!r}")


class SQPRecord(BaseModel):
    """
    One raw search query performance row from the warehouse.

    Ensures:
    - query_date is a calendar date
    - Metric columns are integers (None becomes 0)
    """
    query_date: date
    query: str
    asin: str
    impressions: int = 0
    clicks: int = 0
    purchases: int = 0

    @validator("query_date", pre=True)
    def parse_query_date(cls, v):
        return to_calendar_date(v)

    @validator("impressions", "clicks", "purchases", pre=True)
    def default_metric(cls, v):
        """Warehouse NULLs count as zero"""
        return 0 if v is None else v


class AggregatedMetrics(BaseModel):
    """Totals and ratios of one (period, query, asin) group"""
    period_key: str
    period_type: PeriodType
    period_start: date
    period_end: date
    query: str
    asin: str
    total_impressions: int = 0
    total_clicks: int = 0
    total_purchases: int = 0
    avg_ctr: float = 0.0
    avg_cvr: float = 0.0
    purchases_per_impression: float = 0.0
    impression_share: Optional[float] = None
    click_share: Optional[float] = None
    purchase_share: Optional[float] = None

    class Config:
        use_enum_values = True


class MetricSnapshot(BaseModel):
    impressions: int
    clicks: int
    purchases: int
    ctr: float
    cvr: float


class MetricChanges(BaseModel):
    """Absolute and percent deltas between two periods"""
    impressions: int
    impressions_percent: float
    clicks: int
    clicks_percent: float
    purchases: int
    purchases_percent: float
    ctr: float
    cvr: float


class PeriodComparison(BaseModel):
    """Period-over-period comparison for one (query, asin) pair"""
    period_type: PeriodType
    current_period: str
    previous_period: str
    query: str
    asin: str
    current_metrics: MetricSnapshot
    previous_metrics: MetricSnapshot
    changes: MetricChanges

    class Config:
        use_enum_values = True


def record_to_dict(record: BaseModel) -> Dict[str, Any]:
    """JSON-friendly dict (dates as ISO strings) for persistence"""
    return record.model_dump(mode="json")
