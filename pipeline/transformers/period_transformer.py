"""
Transform raw warehouse rows into period aggregates with Pydantic validation
"""

from datetime import datetime, time
from typing import Any, Dict, List, Optional
import logging

from pydantic import ValidationError as PydanticValidationError

from models.base import PeriodType
from pipeline.aggregators.period_aggregator import PeriodAggregator
from schemas.metrics import SQPRecord, record_to_dict

logger = logging.getLogger(__name__)


class PeriodTransformer:
    """
    Normalize SQP rows and bucket them into calendar periods.

    Handles:
    - Type conversion (dates, NULL metrics)
    - Skipping rows that cannot be parsed
    - Share metrics and optional period-over-period comparisons

    Step config:
        period_type: weekly | monthly | quarterly | yearly (default: weekly)
        include_share_metrics: default True
        week_start: weekday number the week starts on (default: Sunday)
        include_comparisons: attach comparisons to the output metadata
    """

    def __init__(self, aggregator: Optional[PeriodAggregator] = None):
        self.aggregator = aggregator or PeriodAggregator()

    def parse_records(self, rows: List[Dict[str, Any]]) -> List[SQPRecord]:
        records = []
        for row in rows or []:
            if isinstance(row, SQPRecord):
                records.append(row)
                continue
            try:
                records.append(SQPRecord(**row))
            except (PydanticValidationError, TypeError) as e:
                logger.warning(f"Skipping unparseable SQP row: {e}")
        return records

    async def transform(self, data: Any, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Returns:
            {"data": [aggregated row dicts], "metadata": {...}}
        """
        rows = data.get("data", []) if isinstance(data, dict) else data
        period_type = PeriodType(config.get("period_type", PeriodType.WEEKLY))
        records = self.parse_records(rows or [])

        aggregated = self.aggregator.aggregate_by_period(
            records,
            period_type,
            include_share_metrics=config.get("include_share_metrics", True),
            week_start=config.get("week_start"),
        )

        metadata: Dict[str, Any] = {
            "record_count": len(aggregated),
            "input_records": len(rows or []),
            "skipped_records": len(rows or []) - len(records),
            "period_type": period_type.value,
        }
        if records:
            newest = max(r.query_date for r in records)
            metadata["last_data_timestamp"] = datetime.combine(newest, time.max).isoformat()

        if config.get("include_comparisons"):
            comparisons = self.aggregator.calculate_period_comparison(aggregated, period_type)
            metadata["comparisons"] = [record_to_dict(c) for c in comparisons]

        logger.info(
            f"Transformed {len(records)} records into {len(aggregated)} {period_type.value} aggregates"
        )
        return {"data": [record_to_dict(a) for a in aggregated], "metadata": metadata}
