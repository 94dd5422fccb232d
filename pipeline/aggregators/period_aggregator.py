"""
Bucket search query performance records into calendar periods
"""

import calendar
import logging
from collections import defaultdict
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from models.base import PeriodType
from schemas.metrics import (
    AggregatedMetrics,
    MetricChanges,
    MetricSnapshot,
    PeriodComparison,
    SQPRecord,
    to_calendar_date,
)

logger = logging.getLogger(__name__)

SUNDAY = 6  # date.weekday() numbering, Monday is 0


def safe_divide(numerator: float, denominator: float) -> float:
    """Division that yields 0 instead of NaN or infinity on a zero denominator"""
    if not denominator:
        return 0.0
    return numerator / denominator


# ============================================================================
# Period arithmetic
# ============================================================================

def get_period_key(value: Any, period_type: Union[PeriodType, str], week_start: int = SUNDAY) -> str:
    """
    Deterministic bucket key for a record date.

    weekly    -> ISO date of the week start ("2024-01-14")
    monthly   -> "YYYY-MM"
    quarterly -> "YYYY-Qn"
    yearly    -> "YYYY"
    """
    day = to_calendar_date(value)
    period_type = PeriodType(period_type)

    if period_type == PeriodType.WEEKLY:
        offset = (day.weekday() - week_start) % 7
        return (day - timedelta(days=offset)).isoformat()
    if period_type == PeriodType.MONTHLY:
        return f"{day.year:04d}-{day.month:02d}"
    if period_type == PeriodType.QUARTERLY:
        return f"{day.year:04d}-Q{(day.month - 1) // 3 + 1}"
    return f"{day.year:04d}"


def get_period_start(period_key: str, period_type: Union[PeriodType, str]) -> date:
    """First calendar day of the bucket named by period_key"""
    period_type = PeriodType(period_type)

    if period_type == PeriodType.WEEKLY:
        return date.fromisoformat(period_key)
    if period_type == PeriodType.MONTHLY:
        year, month = period_key.split("-")
        return date(int(year), int(month), 1)
    if period_type == PeriodType.QUARTERLY:
        year, quarter = period_key.split("-Q")
        return date(int(year), (int(quarter) - 1) * 3 + 1, 1)
    return date(int(period_key), 1, 1)


def get_period_end(period_key: str, period_type: Union[PeriodType, str]) -> date:
    """Last calendar day of the bucket (inclusive)"""
    period_type = PeriodType(period_type)
    start = get_period_start(period_key, period_type)

    if period_type == PeriodType.WEEKLY:
        return start + timedelta(days=6)
    if period_type == PeriodType.MONTHLY:
        return _month_end(start.year, start.month)
    if period_type == PeriodType.QUARTERLY:
        return _month_end(start.year, start.month + 2)
    return date(start.year, 12, 31)


def get_previous_period_start(period_start: date, period_type: Union[PeriodType, str]) -> date:
    """Start of the immediately preceding period, using calendar months not day offsets"""
    period_type = PeriodType(period_type)

    if period_type == PeriodType.WEEKLY:
        return period_start - timedelta(days=7)
    if period_type == PeriodType.MONTHLY:
        return _shift_months(period_start, -1)
    if period_type == PeriodType.QUARTERLY:
        return _shift_months(period_start, -3)
    return date(period_start.year - 1, 1, 1)


def _month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def _shift_months(start: date, months: int) -> date:
    index = start.year * 12 + (start.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def _key_for_start(period_start: date, period_type: PeriodType) -> str:
    if period_type == PeriodType.WEEKLY:
        return period_start.isoformat()
    # Any week_start works, the start of a non-weekly period is its own key
    return get_period_key(period_start, period_type)


# ============================================================================
# Aggregator
# ============================================================================

class PeriodAggregator:
    """
    Aggregate SQP records by calendar period.

    Pure and stateless: no warehouse access, safe to share between tasks.
    Groups are keyed by (period_key, query, asin); output order carries no
    meaning.
    """

    def __init__(self, week_start: int = SUNDAY):
        if not 0 <= week_start <= 6:
            raise ValueError(f"week_start must be a weekday number 0-6, got {week_start}")
        self.week_start = week_start

    def aggregate_by_period(
        self,
        records: Iterable[Union[SQPRecord, Dict[str, Any]]],
        period_type: Union[PeriodType, str],
        include_share_metrics: bool = False,
        week_start: Optional[int] = None,
    ) -> List[AggregatedMetrics]:
        """
        Sum metrics per (period, query, asin) and derive ratios.

        Args:
            records: SQPRecord instances or raw row dicts
            period_type: weekly, monthly, quarterly or yearly
            include_share_metrics: Also compute each asin's share of its
                (period, query) cohort
            week_start: Override the aggregator's week start for this call

        Returns:
            One AggregatedMetrics per group, empty list for empty input
        """
        period_type = PeriodType(period_type)
        week_start = self.week_start if week_start is None else week_start

        groups: Dict[Tuple[str, str, str], List[int]] = defaultdict(lambda: [0, 0, 0])
        for raw in records:
            record = raw if isinstance(raw, SQPRecord) else SQPRecord(**raw)
            key = (
                get_period_key(record.query_date, period_type, week_start),
                record.query,
                record.asin,
            )
            totals = groups[key]
            totals[0] += record.impressions
            totals[1] += record.clicks
            totals[2] += record.purchases

        if not groups:
            return []

        aggregated = []
        for (period_key, query, asin), (impressions, clicks, purchases) in groups.items():
            aggregated.append(
                AggregatedMetrics(
                    period_key=period_key,
                    period_type=period_type,
                    period_start=get_period_start(period_key, period_type),
                    period_end=get_period_end(period_key, period_type),
                    query=query,
                    asin=asin,
                    total_impressions=impressions,
                    total_clicks=clicks,
                    total_purchases=purchases,
                    avg_ctr=safe_divide(clicks, impressions),
                    avg_cvr=safe_divide(purchases, clicks),
                    purchases_per_impression=safe_divide(purchases, impressions),
                )
            )

        if include_share_metrics:
            self._apply_share_metrics(aggregated)

        logger.debug(
            f"Aggregated {len(aggregated)} {period_type.value} groups"
        )
        return aggregated

    def calculate_period_comparison(
        self,
        current: List[AggregatedMetrics],
        period_type: Union[PeriodType, str],
        history: Optional[List[AggregatedMetrics]] = None,
    ) -> List[PeriodComparison]:
        """
        Compare every aggregated row with the same (query, asin) in the
        preceding period.

        history holds the candidate previous-period rows and defaults to
        current itself, so a multi-period aggregate compares against its own
        earlier buckets. Rows without a predecessor are skipped.
        """
        if not current:
            return []

        period_type = PeriodType(period_type)
        candidates = current if history is None else history
        index = {(row.period_key, row.query, row.asin): row for row in candidates}

        comparisons = []
        for row in current:
            previous_key = _key_for_start(
                get_previous_period_start(row.period_start, period_type), period_type
            )
            previous = index.get((previous_key, row.query, row.asin))
            if previous is None:
                continue
            comparisons.append(self._compare(row, previous, period_type))

        return comparisons

    @staticmethod
    def _apply_share_metrics(aggregated: List[AggregatedMetrics]) -> None:
        cohorts: Dict[Tuple[str, str], List[int]] = defaultdict(lambda: [0, 0, 0])
        for row in aggregated:
            totals = cohorts[(row.period_key, row.query)]
            totals[0] += row.total_impressions
            totals[1] += row.total_clicks
            totals[2] += row.total_purchases

        for row in aggregated:
            impressions, clicks, purchases = cohorts[(row.period_key, row.query)]
            row.impression_share = safe_divide(row.total_impressions, impressions)
            row.click_share = safe_divide(row.total_clicks, clicks)
            row.purchase_share = safe_divide(row.total_purchases, purchases)

    @staticmethod
    def _compare(
        current: AggregatedMetrics,
        previous: AggregatedMetrics,
        period_type: PeriodType,
    ) -> PeriodComparison:
        impressions = current.total_impressions - previous.total_impressions
        clicks = current.total_clicks - previous.total_clicks
        purchases = current.total_purchases - previous.total_purchases

        return PeriodComparison(
            period_type=period_type,
            current_period=current.period_key,
            previous_period=previous.period_key,
            query=current.query,
            asin=current.asin,
            current_metrics=_snapshot(current),
            previous_metrics=_snapshot(previous),
            changes=MetricChanges(
                impressions=impressions,
                impressions_percent=safe_divide(impressions, previous.total_impressions) * 100,
                clicks=clicks,
                clicks_percent=safe_divide(clicks, previous.total_clicks) * 100,
                purchases=purchases,
                purchases_percent=safe_divide(purchases, previous.total_purchases) * 100,
                ctr=current.avg_ctr - previous.avg_ctr,
                cvr=current.avg_cvr - previous.avg_cvr,
            ),
        )


def _snapshot(row: AggregatedMetrics) -> MetricSnapshot:
    return MetricSnapshot(
        impressions=row.total_impressions,
        clicks=row.total_clicks,
        purchases=row.total_purchases,
        ctr=row.avg_ctr,
        cvr=row.avg_cvr,
    )
