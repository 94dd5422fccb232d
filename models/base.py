from datetime import datetime, timezone
from sqlalchemy import JSON
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ============================================================================
# ENUMS
# ============================================================================

class PipelineStatus(str, enum.Enum):
    """Pipeline state machine status"""
    IDLE = "idle"
    LOCKED = "locked"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunStatus(str, enum.Enum):
    """Status of a single monitored run"""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepType(str, enum.Enum):
    """Pipeline step capability type"""
    EXTRACT = "extract"
    TRANSFORM = "transform"
    LOAD = "load"
    CUSTOM = "custom"


class PeriodType(str, enum.Enum):
    """Calendar period used for aggregation"""
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class AlertType(str, enum.Enum):
    """Alert categories"""
    ERROR_RATE = "error_rate"
    EXECUTION_TIME = "execution_time"
    DATA_FRESHNESS = "data_freshness"
    MEMORY_USAGE = "memory_usage"
    QUEUE_DEPTH = "queue_depth"
    CUSTOM = "custom"


class AlertSeverity(str, enum.Enum):
    """Alert severity"""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class LogLevel(str, enum.Enum):
    """Monitor log levels, ordered from least to most severe"""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
