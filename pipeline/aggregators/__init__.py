from pipeline.aggregators.period_aggregator import (
    PeriodAggregator,
    get_period_end,
    get_period_key,
    get_period_start,
    get_previous_period_start,
    safe_divide,
)

__all__ = [
    "PeriodAggregator",
    "get_period_key",
    "get_period_start",
    "get_period_end",
    "get_previous_period_start",
    "safe_divide",
]
