"""
Load period aggregates into the relational store with upsert logic (idempotency)
"""

from typing import Any, Dict, List, Union
import logging

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import LoadError, NonRetryableError
from models.base import utcnow
from models.period_metrics import PeriodMetric
from schemas.metrics import AggregatedMetrics

logger = logging.getLogger(__name__)

CONFLICT_COLUMNS = ["period_type", "period_key", "query", "asin"]

UPDATE_COLUMNS = [
    "period_start",
    "period_end",
    "total_impressions",
    "total_clicks",
    "total_purchases",
    "avg_ctr",
    "avg_cvr",
    "purchases_per_impression",
    "impression_share",
    "click_share",
    "purchase_share",
    "updated_at",
]


class PostgresLoader:
    """
    Sync aggregated metrics into sqp_period_metrics with idempotent upserts.

    Ensures:
    - No duplicate rows on repeated runs
    - Updates existing aggregates when a period is recomputed
    - One transaction per sync call
    """

    def __init__(self, session_maker: async_sessionmaker, batch_size: int = 500):
        self.session_maker = session_maker
        self.batch_size = batch_size

    async def sync(self, data: Any, target_table: str) -> Dict[str, Any]:
        """
        Sync capability used by load steps.

        Returns:
            {"success": True, "records_processed": n}
        """
        if target_table != PeriodMetric.__tablename__:
            raise NonRetryableError(
                f"Unknown sync target table: {target_table}",
                context={"table_name": target_table},
            )

        items = data.get("data", []) if isinstance(data, dict) else (data or [])
        loaded = await self.load(items)
        return {"success": True, "records_processed": loaded}

    async def load(self, items: List[Union[AggregatedMetrics, Dict[str, Any]]]) -> int:
        """
        Upsert aggregates (INSERT ... ON CONFLICT DO UPDATE) in batches.

        Returns:
            Number of records loaded
        """
        if not items:
            return 0

        rows = [self._to_row(item) for item in items]
        loaded_count = 0

        async with self.session_maker() as session:
            try:
                dialect = session.get_bind().dialect.name
                insert = pg_insert if dialect == "postgresql" else sqlite_insert

                for i in range(0, len(rows), self.batch_size):
                    batch = rows[i:i + self.batch_size]
                    stmt = insert(PeriodMetric).values(batch)
                    stmt = stmt.on_conflict_do_update(
                        index_elements=CONFLICT_COLUMNS,
                        set_={column: stmt.excluded[column] for column in UPDATE_COLUMNS},
                    )
                    await session.execute(stmt)
                    loaded_count += len(batch)
                    logger.debug(f"Batch {i // self.batch_size + 1}: upserted {len(batch)} aggregates")

                await session.commit()

            except SQLAlchemyError as e:
                await session.rollback()
                raise LoadError(
                    "Failed to upsert period metrics",
                    context={
                        "table_name": PeriodMetric.__tablename__,
                        "records_to_load": len(rows),
                        "operation": "UPSERT",
                    },
                    original_exception=e,
                )

        logger.info(f"Loaded {loaded_count} aggregates into {PeriodMetric.__tablename__}")
        return loaded_count

    @staticmethod
    def _to_row(item: Union[AggregatedMetrics, Dict[str, Any]]) -> Dict[str, Any]:
        if not isinstance(item, AggregatedMetrics):
            item = AggregatedMetrics(**item)
        row = item.model_dump()
        now = utcnow()
        row["created_at"] = now
        row["updated_at"] = now
        return row
