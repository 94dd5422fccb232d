"""
Warehouse extractor: runs the extract step's query through the connection pool.

This module provides extraction with:
- Pooled client acquisition (released on every exit path)
- Optional dry-run cost gate before the query is billed
- A default date window when the step config gives none
"""

from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple
import logging

from core.exceptions import QueryCostExceededError, QueryError
from pipeline.pool import ConnectionPool, WarehouseClient

logger = logging.getLogger(__name__)

DEFAULT_LOOKBACK_DAYS = 30


class WarehouseExtractor:
    """
    Extract SQP rows from the columnar warehouse.

    Step config:
        sql: Parameterised query (required)
        params: Query parameters; start_date / end_date default to the last
                lookback_days days
        lookback_days: Size of the default window (default: 30)
        max_bytes / max_cost_usd: Refuse queries whose estimate exceeds these
    """

    def __init__(
        self,
        pool: ConnectionPool,
        max_bytes: Optional[int] = None,
        max_cost_usd: Optional[float] = None,
    ):
        self.pool = pool
        self.max_bytes = max_bytes
        self.max_cost_usd = max_cost_usd

    async def extract(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run the configured query.

        Returns:
            {"data": [row dicts], "metadata": {"record_count", "bytes_processed", "cost_usd"}}

        Raises:
            QueryError: No sql in the step config
            QueryCostExceededError: The cost estimate is over budget
        """
        sql = config.get("sql")
        if not sql:
            raise QueryError("Extract step config has no sql", context={"config_keys": sorted(config)})

        params = self._default_window(dict(config.get("params") or {}), config)
        max_bytes = config.get("max_bytes", self.max_bytes)
        max_cost_usd = config.get("max_cost_usd", self.max_cost_usd)

        async def run(client: WarehouseClient) -> Tuple[List[Any], Dict[str, Any]]:
            estimate: Dict[str, Any] = {}
            if max_bytes is not None or max_cost_usd is not None:
                estimate = await client.estimate_query_cost(sql) or {}
                self._check_budget(sql, estimate, max_bytes, max_cost_usd)
            rows = await client.query(sql, params)
            return rows, estimate

        rows, estimate = await self.pool.with_client(run)
        records = [dict(row) for row in rows or []]

        logger.info(f"Extracted {len(records)} records from warehouse")
        return {
            "data": records,
            "metadata": {
                "record_count": len(records),
                "bytes_processed": estimate.get("bytes"),
                "cost_usd": estimate.get("cost_usd"),
            },
        }

    @staticmethod
    def _default_window(params: Dict[str, Any], config: Dict[str, Any]) -> Dict[str, Any]:
        end_date = params.get("end_date") or date.today().isoformat()
        if "start_date" not in params:
            lookback = int(config.get("lookback_days", DEFAULT_LOOKBACK_DAYS))
            params["start_date"] = (date.fromisoformat(str(end_date)[:10]) - timedelta(days=lookback)).isoformat()
        params.setdefault("end_date", end_date)
        return params

    @staticmethod
    def _check_budget(
        sql: str,
        estimate: Dict[str, Any],
        max_bytes: Optional[int],
        max_cost_usd: Optional[float],
    ) -> None:
        estimated_bytes = estimate.get("bytes") or 0
        estimated_cost = estimate.get("cost_usd") or 0.0

        over_bytes = max_bytes is not None and estimated_bytes > max_bytes
        over_cost = max_cost_usd is not None and estimated_cost > max_cost_usd
        if over_bytes or over_cost:
            raise QueryCostExceededError(
                f"Query estimate {estimated_bytes} bytes (${estimated_cost:.4f}) exceeds budget",
                context={
                    "sql": sql[:200],
                    "estimated_bytes": estimated_bytes,
                    "estimated_cost_usd": estimated_cost,
                    "max_bytes": max_bytes,
                    "max_cost_usd": max_cost_usd,
                },
            )
