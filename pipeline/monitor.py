"""
Run metrics, error records, alerting and level-filtered logging for one pipeline.

The monitor is an append-only recorder: it never changes pipeline status and
none of its persistence failures reach the caller. Whatever cannot be
written to the metadata store is logged through the module logger instead.
"""

import logging
import statistics
import traceback
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

import psutil
from pydantic_core import to_jsonable_python
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.config import settings
from core.exceptions import AlertDispatchError
from models.base import AlertSeverity, AlertType, LogLevel, RunStatus, utcnow
from models.pipeline_event import PipelineErrorRecord, PipelineLogRecord
from models.pipeline_metadata import PipelineMetadataEntry
from models.pipeline_run import PipelineRunMetrics
from schemas.pipeline import (
    Alert,
    AlertThresholds,
    DashboardMetrics,
    PerformanceAnalysis,
    StepMetrics,
)

logger = logging.getLogger(__name__)

AlertChannel = Callable[[Alert], Awaitable[None]]

LEVEL_ORDER = {
    LogLevel.DEBUG: 0,
    LogLevel.INFO: 1,
    LogLevel.WARNING: 2,
    LogLevel.ERROR: 3,
}

PYTHON_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}

SEVERITY_LOG_LEVEL = {
    AlertSeverity.INFO: LogLevel.INFO,
    AlertSeverity.WARNING: LogLevel.WARNING,
    AlertSeverity.CRITICAL: LogLevel.ERROR,
}

RUN_STATUS_ALIASES = {
    "success": RunStatus.COMPLETED,
    "completed": RunStatus.COMPLETED,
    "failed": RunStatus.FAILED,
    "failure": RunStatus.FAILED,
    "cancelled": RunStatus.FAILED,
    "running": RunStatus.RUNNING,
}

ERROR_RATE_WINDOW = 10
DATA_FRESHNESS_KEY = "data_freshness"


def process_memory_rss() -> int:
    """Resident set size of this process in bytes"""
    return psutil.Process().memory_info().rss


class PipelineMonitor:
    """
    Records what a pipeline run did and decides when to raise alerts.

    Alert channels are named async handlers registered by the caller; the
    configured channel names select which of them receive alerts. There are
    no built-in channels.
    """

    def __init__(
        self,
        pipeline_id: str,
        session_maker: async_sessionmaker,
        alert_thresholds: Optional[AlertThresholds] = None,
        alert_channels: Iterable[str] = (),
        log_level: Optional[str] = None,
        enable_alerts: bool = True,
        baseline_window: int = 20,
        memory_probe: Callable[[], int] = process_memory_rss,
    ):
        self.pipeline_id = pipeline_id
        self.session_maker = session_maker
        self.alert_thresholds = alert_thresholds or AlertThresholds(
            error_rate=settings.ALERT_ERROR_RATE,
            execution_time_ms=settings.ALERT_EXECUTION_TIME_MS,
            data_freshness_ms=settings.ALERT_DATA_FRESHNESS_MS,
            memory_usage_bytes=settings.ALERT_MEMORY_USAGE_BYTES,
        )
        self.alert_channels = list(alert_channels)
        self.log_level = LogLevel((log_level or settings.MONITOR_LOG_LEVEL).lower())
        self.enable_alerts = enable_alerts
        self.baseline_window = baseline_window
        self.memory_probe = memory_probe

        self._channels: Dict[str, AlertChannel] = {}

        # Current run
        self.run_id: Optional[str] = None
        self.run_start: Optional[datetime] = None
        self.step_metrics: Dict[str, StepMetrics] = {}
        self.error_count = 0

        # Last finished run, for throughput and anomaly detection
        self.last_run_id: Optional[str] = None
        self.last_duration_ms: Optional[int] = None
        self.last_records_processed = 0

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    async def start_pipeline(self) -> str:
        """Open a run and persist its running metrics row. Returns the run id."""
        self.run_id = str(uuid.uuid4())
        self.run_start = utcnow()
        self.step_metrics = {}
        self.error_count = 0

        await self._add(
            "record run start",
            PipelineRunMetrics(
                run_id=self.run_id,
                pipeline_id=self.pipeline_id,
                status=RunStatus.RUNNING,
                start_time=self.run_start,
                steps={},
                total_records_processed=0,
            ),
        )
        await self.log(LogLevel.INFO, "Pipeline run started", {"run_id": self.run_id})
        return self.run_id

    async def end_pipeline(self, status: Union[RunStatus, str], error: Optional[str] = None) -> None:
        """Close the current run with its final status, duration and record count"""
        if self.run_id is None:
            logger.warning(f"end_pipeline called for {self.pipeline_id} without an active run")
            return

        run_status = self._run_status(status)
        end_time = utcnow()
        duration_ms = int((end_time - self.run_start).total_seconds() * 1000)
        total_records = self._records_processed()

        try:
            async with self.session_maker() as session:
                await session.execute(
                    update(PipelineRunMetrics)
                    .where(PipelineRunMetrics.run_id == self.run_id)
                    .values(
                        status=run_status,
                        end_time=end_time,
                        duration_ms=duration_ms,
                        total_records_processed=total_records,
                        steps=self._steps_json(),
                        error=error,
                    )
                )
                await session.commit()
        except Exception as e:
            logger.error(f"Monitor failed to record run end for {self.run_id}: {e}")

        level = LogLevel.INFO if run_status == RunStatus.COMPLETED else LogLevel.ERROR
        await self.log(
            level,
            f"Pipeline run {run_status.value} in {duration_ms}ms",
            {"run_id": self.run_id, "records_processed": total_records, "error": error},
        )

        self.last_run_id = self.run_id
        self.last_duration_ms = duration_ms
        self.last_records_processed = total_records
        self.run_id = None
        self.run_start = None

    async def record_step_metrics(self, step_name: str, metrics: Union[StepMetrics, Dict[str, Any]]) -> None:
        """Keep the latest attempt's metrics for a step"""
        if not isinstance(metrics, StepMetrics):
            metrics = StepMetrics(**metrics)
        self.step_metrics[step_name] = metrics

        if self.run_id is None:
            return
        try:
            async with self.session_maker() as session:
                await session.execute(
                    update(PipelineRunMetrics)
                    .where(PipelineRunMetrics.run_id == self.run_id)
                    .values(
                        steps=self._steps_json(),
                        total_records_processed=self._records_processed(),
                    )
                )
                await session.commit()
        except Exception as e:
            logger.error(f"Monitor failed to record metrics for step {step_name}: {e}")

    async def record_error(
        self,
        step: str,
        error: BaseException,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Append an error with its traceback to pipeline_errors"""
        self.error_count += 1
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))

        logger.error(f"[{self.pipeline_id}] Step {step} error: {error}")
        await self._add(
            f"record error for step {step}",
            PipelineErrorRecord(
                pipeline_id=self.pipeline_id,
                run_id=self.run_id,
                step=step,
                error=str(error),
                stack=stack,
                context=to_jsonable_python(context or {}, fallback=str),
                timestamp=utcnow(),
            ),
        )

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def register_alert_channel(self, name: str, handler: AlertChannel) -> None:
        self._channels[name] = handler
        logger.debug(f"Registered alert channel '{name}' for {self.pipeline_id}")

    def unregister_alert_channel(self, name: str) -> None:
        self._channels.pop(name, None)

    async def evaluate_alerts(self) -> List[Alert]:
        """Run every threshold check independently without dispatching"""
        alerts: List[Alert] = []
        checks = (
            self._check_error_rate,
            self._check_execution_time,
            self._check_data_freshness,
            self._check_memory_usage,
        )
        for check in checks:
            try:
                alert = await check()
            except Exception as e:
                logger.error(f"Alert check {check.__name__} failed for {self.pipeline_id}: {e}")
                continue
            if alert is not None:
                alerts.append(alert)
        return alerts

    async def check_alerts(self) -> List[Alert]:
        """Evaluate thresholds and dispatch every resulting alert"""
        if not self.enable_alerts:
            return []

        alerts = await self.evaluate_alerts()
        for alert in alerts:
            await self.send_alert(alert)
        return alerts

    async def send_alert(self, alert: Alert) -> None:
        """Deliver to every configured channel. Channel failures are logged only."""
        await self.log(
            SEVERITY_LOG_LEVEL[alert.severity],
            f"Alert [{alert.type.value}]: {alert.message}",
            {"alert": alert.model_dump(mode="json")},
        )

        for name in self.alert_channels:
            handler = self._channels.get(name)
            if handler is None:
                error = AlertDispatchError(
                    f"Alert channel '{name}' is not registered",
                    context={"channel": name, "alert_type": alert.type.value},
                )
                logger.error(str(error))
                continue
            try:
                await handler(alert)
            except Exception as e:
                error = AlertDispatchError(
                    f"Alert channel '{name}' failed to deliver alert",
                    context={"channel": name, "alert_type": alert.type.value},
                    original_exception=e,
                )
                logger.error(str(error))

    async def _check_error_rate(self) -> Optional[Alert]:
        failed, total = await self._step_outcomes()
        if total == 0:
            return None
        rate = failed / total
        threshold = self.alert_thresholds.error_rate
        if rate < threshold:
            return None
        return Alert(
            type=AlertType.ERROR_RATE,
            severity=AlertSeverity.CRITICAL,
            message=f"Error rate ({rate * 100:.2f}%) exceeds threshold ({threshold * 100:.2f}%)",
            metadata={"error_rate": rate, "threshold": threshold, "failed_steps": failed, "total_steps": total},
        )

    async def _check_execution_time(self) -> Optional[Alert]:
        if self.run_start is None:
            return None
        elapsed_ms = int((utcnow() - self.run_start).total_seconds() * 1000)
        threshold = self.alert_thresholds.execution_time_ms
        if elapsed_ms <= threshold:
            return None
        return Alert(
            type=AlertType.EXECUTION_TIME,
            severity=AlertSeverity.WARNING,
            message=f"Execution time exceeded threshold ({round(elapsed_ms / 60000)} minutes)",
            metadata={"execution_time_ms": elapsed_ms, "threshold_ms": threshold, "run_id": self.run_id},
        )

    async def _check_data_freshness(self) -> Optional[Alert]:
        freshness = await self.get_data_freshness()
        if freshness is None:
            return None
        age_ms = int((utcnow() - freshness).total_seconds() * 1000)
        threshold = self.alert_thresholds.data_freshness_ms
        if age_ms <= threshold:
            return None
        return Alert(
            type=AlertType.DATA_FRESHNESS,
            severity=AlertSeverity.WARNING,
            message=f"Data is stale ({round(age_ms / 3_600_000)} hours old)",
            metadata={"age_ms": age_ms, "threshold_ms": threshold, "last_refresh": freshness.isoformat()},
        )

    async def _check_memory_usage(self) -> Optional[Alert]:
        threshold = self.alert_thresholds.memory_usage_bytes
        if threshold is None:
            return None
        rss = self.memory_probe()
        if rss <= threshold:
            return None
        return Alert(
            type=AlertType.MEMORY_USAGE,
            severity=AlertSeverity.WARNING,
            message=f"Memory usage high ({round(rss / (1024 * 1024))}MB)",
            metadata={"rss_bytes": rss, "threshold_bytes": threshold},
        )

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    async def log(self, level: Union[LogLevel, str], message: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """
        Level-filtered pipeline log.

        Entries at or above the configured level go to the module logger;
        warning and error entries are also kept in pipeline_logs.
        """
        level = LogLevel(level)
        if LEVEL_ORDER[level] < LEVEL_ORDER[self.log_level]:
            return

        suffix = f" | {metadata}" if metadata else ""
        logger.log(PYTHON_LEVELS[level], f"[{self.pipeline_id}] {message}{suffix}")

        if level in (LogLevel.WARNING, LogLevel.ERROR):
            await self._add(
                "persist log entry",
                PipelineLogRecord(
                    pipeline_id=self.pipeline_id,
                    run_id=self.run_id,
                    level=level.value,
                    message=message,
                    log_metadata=to_jsonable_python(metadata or {}, fallback=str),
                    timestamp=utcnow(),
                ),
            )

    # ------------------------------------------------------------------
    # Derived analytics
    # ------------------------------------------------------------------

    async def get_error_rate(self) -> float:
        """Fraction of failed steps across the last 10 persisted runs"""
        failed, total = await self._step_outcomes()
        return failed / total if total else 0.0

    def get_throughput(self) -> float:
        """Records per second of the current run, or of the last run when idle"""
        if self.run_start is not None:
            duration_ms = (utcnow() - self.run_start).total_seconds() * 1000
            records = self._records_processed()
        else:
            duration_ms = self.last_duration_ms or 0
            records = self.last_records_processed
        if duration_ms <= 0:
            return 0.0
        return records / (duration_ms / 1000)

    async def analyze_performance(self, current_duration_ms: Optional[int] = None) -> PerformanceAnalysis:
        """
        Compare a run's duration with the rolling baseline of completed runs.

        Anomalous when more than two standard deviations from the mean.
        Without at least two baseline samples, or with zero spread, nothing
        is flagged.
        """
        current = current_duration_ms
        if current is None:
            if self.run_start is not None:
                current = int((utcnow() - self.run_start).total_seconds() * 1000)
            else:
                current = self.last_duration_ms
        if not current:
            return PerformanceAnalysis()

        durations = await self._baseline_durations()
        if len(durations) < 2:
            return PerformanceAnalysis(current_duration_ms=current)

        mean = statistics.mean(durations)
        stddev = statistics.stdev(durations)
        if stddev == 0:
            return PerformanceAnalysis(
                current_duration_ms=current,
                baseline_mean_ms=mean,
                baseline_stddev_ms=0.0,
            )

        deviation = abs(current - mean) / stddev
        is_anomalous = deviation > 2
        return PerformanceAnalysis(
            is_anomalous=is_anomalous,
            deviation_from_baseline=deviation,
            current_duration_ms=current,
            baseline_mean_ms=mean,
            baseline_stddev_ms=stddev,
            recommendation=(
                "Performance significantly deviates from baseline. Investigate potential causes."
                if is_anomalous else None
            ),
        )

    async def get_dashboard_metrics(self) -> DashboardMetrics:
        total_runs = 0
        success_rate = 1.0
        average_ms = 0.0
        last_status = None

        try:
            async with self.session_maker() as session:
                rows = (
                    await session.execute(
                        select(PipelineRunMetrics.status, PipelineRunMetrics.duration_ms)
                        .where(PipelineRunMetrics.pipeline_id == self.pipeline_id)
                        .order_by(PipelineRunMetrics.created_at.desc(), PipelineRunMetrics.id.desc())
                    )
                ).all()
        except Exception as e:
            logger.error(f"Monitor failed to load dashboard metrics: {e}")
            rows = []

        if rows:
            total_runs = len(rows)
            last_status = RunStatus(rows[0].status).value
            finished = [r for r in rows if r.status != RunStatus.RUNNING]
            if finished:
                succeeded = sum(1 for r in finished if r.status == RunStatus.COMPLETED)
                success_rate = succeeded / len(finished)
            durations = [r.duration_ms for r in finished if r.duration_ms is not None]
            if durations:
                average_ms = statistics.mean(durations)

        if self.run_id is not None:
            current_status = RunStatus.RUNNING.value
        else:
            current_status = last_status or "idle"

        return DashboardMetrics(
            current_status=current_status,
            total_runs=total_runs,
            success_rate=success_rate,
            average_execution_time_ms=average_ms,
            recent_errors=await self.get_recent_errors(limit=10),
            active_alerts=await self.evaluate_alerts(),
            data_freshness=await self.get_data_freshness(),
        )

    def get_current_metrics(self) -> Dict[str, Any]:
        elapsed_ms = None
        if self.run_start is not None:
            elapsed_ms = int((utcnow() - self.run_start).total_seconds() * 1000)
        return {
            "run_id": self.run_id,
            "start_time": self.run_start,
            "elapsed_ms": elapsed_ms,
            "steps": self._steps_json(),
            "total_records_processed": self._records_processed(),
            "error_count": self.error_count,
        }

    async def get_summary(self) -> Dict[str, Any]:
        performance = await self.analyze_performance()
        return {
            "pipeline_id": self.pipeline_id,
            "error_rate": await self.get_error_rate(),
            "throughput": self.get_throughput(),
            "performance": performance.model_dump(),
            "current": self.get_current_metrics(),
            "data_freshness": await self.get_data_freshness(),
        }

    def get_resource_metrics(self) -> Dict[str, Any]:
        process = psutil.Process()
        memory = process.memory_info()
        return {
            "rss_bytes": memory.rss,
            "vms_bytes": memory.vms,
            "cpu_percent": process.cpu_percent(interval=None),
            "num_threads": process.num_threads(),
        }

    # ------------------------------------------------------------------
    # Data freshness and errors
    # ------------------------------------------------------------------

    async def update_data_freshness(self, timestamp: Optional[datetime] = None) -> None:
        """Stamp the time the synced data was last refreshed"""
        value = (timestamp or utcnow()).isoformat()
        try:
            async with self.session_maker() as session:
                entry = await session.get(PipelineMetadataEntry, (self.pipeline_id, DATA_FRESHNESS_KEY))
                if entry is None:
                    session.add(
                        PipelineMetadataEntry(
                            pipeline_id=self.pipeline_id,
                            key=DATA_FRESHNESS_KEY,
                            value=value,
                            updated_at=utcnow(),
                        )
                    )
                else:
                    entry.value = value
                    entry.updated_at = utcnow()
                await session.commit()
        except Exception as e:
            logger.error(f"Monitor failed to update data freshness for {self.pipeline_id}: {e}")

    async def get_data_freshness(self) -> Optional[datetime]:
        try:
            async with self.session_maker() as session:
                entry = await session.get(PipelineMetadataEntry, (self.pipeline_id, DATA_FRESHNESS_KEY))
        except Exception as e:
            logger.error(f"Monitor failed to read data freshness for {self.pipeline_id}: {e}")
            return None
        if entry is None:
            return None
        return datetime.fromisoformat(entry.value)

    async def get_recent_errors(self, limit: int = 20) -> List[Dict[str, Any]]:
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    select(PipelineErrorRecord)
                    .where(PipelineErrorRecord.pipeline_id == self.pipeline_id)
                    .order_by(PipelineErrorRecord.timestamp.desc(), PipelineErrorRecord.id.desc())
                    .limit(limit)
                )
                records = result.scalars().all()
        except Exception as e:
            logger.error(f"Monitor failed to load recent errors: {e}")
            return []

        return [
            {
                "run_id": r.run_id,
                "step": r.step,
                "error": r.error,
                "context": r.context or {},
                "timestamp": r.timestamp,
            }
            for r in records
        ]

    async def cleanup_old_data(self, days_to_keep: Optional[int] = None) -> Dict[str, int]:
        """Delete metrics, errors and logs older than days_to_keep"""
        days = settings.HISTORY_RETENTION_DAYS if days_to_keep is None else days_to_keep
        cutoff = utcnow() - timedelta(days=days)
        removed = {"metrics": 0, "errors": 0, "logs": 0}

        try:
            async with self.session_maker() as session:
                for key, model, column in (
                    ("metrics", PipelineRunMetrics, PipelineRunMetrics.created_at),
                    ("errors", PipelineErrorRecord, PipelineErrorRecord.timestamp),
                    ("logs", PipelineLogRecord, PipelineLogRecord.timestamp),
                ):
                    result = await session.execute(
                        delete(model).where(model.pipeline_id == self.pipeline_id, column < cutoff)
                    )
                    removed[key] = result.rowcount
                await session.commit()
        except Exception as e:
            logger.error(f"Monitor failed to clean up data older than {days} days: {e}")
            return removed

        logger.info(
            f"Cleaned up monitoring data for {self.pipeline_id}: "
            f"{removed['metrics']} runs, {removed['errors']} errors, {removed['logs']} logs"
        )
        return removed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _add(self, action: str, *records) -> None:
        try:
            async with self.session_maker() as session:
                session.add_all(records)
                await session.commit()
        except Exception as e:
            logger.error(f"Monitor failed to {action}: {e}")

    async def _step_outcomes(self) -> tuple:
        """(failed, total) step counts across the last ERROR_RATE_WINDOW runs"""
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    select(PipelineRunMetrics.steps)
                    .where(PipelineRunMetrics.pipeline_id == self.pipeline_id)
                    .order_by(PipelineRunMetrics.created_at.desc(), PipelineRunMetrics.id.desc())
                    .limit(ERROR_RATE_WINDOW)
                )
                runs = result.scalars().all()
        except Exception as e:
            logger.error(f"Monitor failed to load recent run steps: {e}")
            return 0, 0

        failed = total = 0
        for steps in runs:
            for metrics in (steps or {}).values():
                total += 1
                if not metrics.get("success", False):
                    failed += 1
        return failed, total

    async def _baseline_durations(self) -> List[int]:
        query = (
            select(PipelineRunMetrics.duration_ms)
            .where(
                PipelineRunMetrics.pipeline_id == self.pipeline_id,
                PipelineRunMetrics.status == RunStatus.COMPLETED,
                PipelineRunMetrics.duration_ms.is_not(None),
            )
            .order_by(PipelineRunMetrics.created_at.desc(), PipelineRunMetrics.id.desc())
            .limit(self.baseline_window)
        )
        excluded = self.run_id or self.last_run_id
        if excluded:
            query = query.where(PipelineRunMetrics.run_id != excluded)

        try:
            async with self.session_maker() as session:
                return list((await session.execute(query)).scalars().all())
        except Exception as e:
            logger.error(f"Monitor failed to load duration baseline: {e}")
            return []

    def _steps_json(self) -> Dict[str, Any]:
        return {name: m.model_dump() for name, m in self.step_metrics.items()}

    def _records_processed(self) -> int:
        return sum(m.records_processed for m in self.step_metrics.values())

    @staticmethod
    def _run_status(status: Union[RunStatus, str]) -> RunStatus:
        if isinstance(status, RunStatus):
            return status
        try:
            return RUN_STATUS_ALIASES[str(status).lower()]
        except KeyError:
            raise ValueError(f"Unknown run status: {status}")
