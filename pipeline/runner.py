# ============================================================================
# File: pipeline/runner.py
# Description: Step orchestrator with retry, crash recovery and single-flight runs
# ============================================================================
"""
Pipeline Runner - Orchestrates the configured steps of one pipeline.

This module provides the run driver with:
- Single-flight execution through the state manager's lock
- Dependency checks and strictly sequential steps
- Retry with exponential backoff for transient step failures
- Step checkpoints that let a failed run resume where it stopped
- A data-quality gate on the final output
- A structured result on every path (execute() never raises)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, time as dt_time, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic_core import to_jsonable_python
from sqlalchemy.exc import SQLAlchemyError

from core.exceptions import (
    LoadError,
    LockConflictError,
    NonRetryableError,
    PipelineException,
    ShutdownRequestedError,
    StepExecutionError,
    StepTimeoutError,
    ValidationError,
)
from models.base import LogLevel, PipelineStatus, StepType, utcnow
from pipeline.monitor import PipelineMonitor
from pipeline.pool import ConnectionPool
from pipeline.retry import backoff_delay_ms, classify_error, is_retryable
from pipeline.scheduler import CronNextRunCalculator, NextRunCalculator
from pipeline.state import PipelineStateManager
from schemas.metrics import to_calendar_date
from schemas.pipeline import (
    Alert,
    PipelineConfig,
    PipelineResult,
    PipelineStep,
    PipelineWarning,
    RecoveryPoint,
    StepMetrics,
    StepResult,
)

logger = logging.getLogger(__name__)

ALREADY_RUNNING = "Pipeline is already running"
SHUTDOWN_REQUESTED = "Pipeline shutdown requested"
DEFAULT_TARGET_TABLE = "sqp_period_metrics"

METRIC_FIELDS = (
    "impressions",
    "clicks",
    "purchases",
    "total_impressions",
    "total_clicks",
    "total_purchases",
)
IDENTIFIER_FIELDS = ("asin", "query")
RECORD_DATE_FIELDS = ("query_date", "period_end")

ExtractFn = Callable[[Dict[str, Any]], Awaitable[Any]]
TransformFn = Callable[[Any, Dict[str, Any]], Awaitable[Any]]
SyncFn = Callable[[Any, str], Awaitable[Any]]


@dataclass
class StepCapabilities:
    """
    External functions that do the actual work of each step type.

    extract(config) -> {data, metadata}
    transform(data, config) -> {data, metadata}
    sync(data, target_table) -> {success, records_processed}
    custom[name](data, config) -> {data, metadata}
    """
    extract: Optional[ExtractFn] = None
    transform: Optional[TransformFn] = None
    sync: Optional[SyncFn] = None
    custom: Dict[str, TransformFn] = field(default_factory=dict)


def _field(result: Any, name: str, default: Any = None) -> Any:
    """Read a field from a dict or attribute-style capability result"""
    if isinstance(result, dict):
        return result.get(name, default)
    return getattr(result, name, default)


def _cause(error: BaseException) -> str:
    return error.message if isinstance(error, PipelineException) else str(error)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class PipelineOrchestrator:
    """
    Production pipeline driver

    Responsibilities:
    - Own every status transition of the pipeline for a run
    - Execute steps in configured order, never past the first failure
    - Retry transient failures, stop immediately on fatal ones
    - Checkpoint each completed step for resume-on-failure
    - Always release the lock
    """

    def __init__(
        self,
        config: PipelineConfig,
        state_manager: PipelineStateManager,
        monitor: PipelineMonitor,
        capabilities: StepCapabilities,
        pool: Optional[ConnectionPool] = None,
        next_run_calculator: Optional[NextRunCalculator] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.state_manager = state_manager
        self.monitor = monitor
        self.capabilities = capabilities
        self.pool = pool
        self.next_run_calculator = next_run_calculator or CronNextRunCalculator()
        self._sleep = sleep

        self.current_run_id: Optional[str] = None
        self._active = False
        self._run_lock_id: Optional[str] = None
        self._shutdown_requested = False
        self._output_metadata: Dict[str, Any] = {}

    async def execute(
        self,
        resume_from_failure: bool = False,
        dry_run: bool = False,
        skip_validation: bool = False,
    ) -> PipelineResult:
        """
        Run the pipeline once.

        Args:
            resume_from_failure: Skip steps a failed run already completed
            dry_run: Run extract/transform but skip load steps
            skip_validation: Skip the data-quality gate

        Returns:
            PipelineResult. Failures are reported in result.error, never raised.
        """
        start_time = utcnow()
        started = time.monotonic()
        total_steps = len(self.config.steps)

        def result(success: bool, **kwargs) -> PipelineResult:
            return PipelineResult(
                success=success,
                run_id=self.current_run_id or "",
                start_time=start_time,
                end_time=utcnow(),
                duration_ms=_elapsed_ms(started),
                total_steps=total_steps,
                **kwargs,
            )

        if self._shutdown_requested:
            return result(False, error=SHUTDOWN_REQUESTED)

        # --------------------------------------------------
        # PHASE 1: SINGLE-FLIGHT LOCK
        # --------------------------------------------------
        try:
            locked = await self.state_manager.lock_pipeline()
        except Exception as e:
            logger.error(f"Lock acquisition for {self.config.name} failed: {e}")
            locked = False
        if not locked:
            conflict = LockConflictError(ALREADY_RUNNING, context={"pipeline_id": self.config.name})
            logger.warning(str(conflict))
            return result(False, error=conflict.message)

        self._active = True
        self._run_lock_id = self.state_manager.lock_id
        self._output_metadata = {}
        steps_completed = 0
        warnings: List[PipelineWarning] = []

        try:
            # --------------------------------------------------
            # PHASE 2: START RUN
            # --------------------------------------------------
            self.current_run_id = await self.monitor.start_pipeline()
            await self._checkpoint(
                "mark pipeline running",
                self.state_manager.update_state(
                    owner_lock_id=self._run_lock_id,
                    status=PipelineStatus.RUNNING,
                    current_step=None,
                ),
            )
            logger.info(f"Pipeline {self.config.name} started (run {self.current_run_id})")

            # --------------------------------------------------
            # PHASE 3: RECOVERY POINT
            # --------------------------------------------------
            succeeded, output = await self._prepare_run(resume_from_failure)
            steps_completed = len(succeeded)

            # --------------------------------------------------
            # PHASE 4: STEPS
            # --------------------------------------------------
            for step in self.config.steps:
                if step.name in succeeded:
                    continue

                missing = [d for d in step.dependencies if d not in succeeded]
                if missing:
                    raise StepExecutionError(
                        f"Step {step.name} has unmet dependencies: {', '.join(missing)}",
                        step_name=step.name,
                        attempts=0,
                        context={"missing_dependencies": missing},
                    )

                # Cooperative cancellation point
                if self._shutdown_requested:
                    raise ShutdownRequestedError(SHUTDOWN_REQUESTED, context={"next_step": step.name})

                if not await self.state_manager.refresh_lock():
                    logger.warning(f"Could not refresh lock of {self.config.name} before {step.name}")
                await self._checkpoint(
                    f"record current step {step.name}",
                    self.state_manager.update_state(owner_lock_id=self._run_lock_id, current_step=step.name),
                )

                step_result = await self._execute_step(step, output, dry_run)
                if not step_result.success:
                    raise StepExecutionError(
                        step_result.error,
                        step_name=step.name,
                        attempts=step_result.attempts,
                    )

                await self._checkpoint(
                    f"checkpoint step {step.name}",
                    self.state_manager.save_step_data(
                        step.name,
                        {
                            "completed": True,
                            "data": step_result.data,
                            "duration_ms": step_result.duration_ms,
                            "records_processed": step_result.records_processed,
                        },
                        owner_lock_id=self._run_lock_id,
                    ),
                )
                succeeded[step.name] = step_result.data
                steps_completed += 1
                output = step_result.data

            # A shutdown that arrived during the last step
            if self._shutdown_requested:
                raise ShutdownRequestedError(SHUTDOWN_REQUESTED, context={"steps_completed": steps_completed})

            # --------------------------------------------------
            # PHASE 5: DATA-QUALITY GATE
            # --------------------------------------------------
            if not skip_validation:
                warnings.extend(self._check_data_quality(output))
            for warning in warnings:
                await self.monitor.log(LogLevel.WARNING, warning.message, {"type": warning.type})

            # Evaluated while the run is still open
            alerts = await self._collect_alerts()

            # --------------------------------------------------
            # PHASE 6: FINALIZE
            # --------------------------------------------------
            finished_at = utcnow()
            await self._checkpoint(
                "mark pipeline completed",
                self.state_manager.update_state(
                    owner_lock_id=self._run_lock_id,
                    status=PipelineStatus.COMPLETED,
                    last_success_time=finished_at,
                    current_step=None,
                ),
            )
            await self.monitor.update_data_freshness(finished_at)
            await self.monitor.end_pipeline("success")
            await self._record_outcome(True)

            logger.info(
                f"Pipeline {self.config.name} completed: "
                f"{steps_completed}/{total_steps} steps, {len(warnings)} warnings, {len(alerts)} alerts"
            )
            return result(
                True,
                steps_completed=steps_completed,
                warnings=warnings,
                alerts=alerts,
                metrics={**self.monitor.get_current_metrics(), "throughput": self.monitor.get_throughput()},
            )

        except ShutdownRequestedError as e:
            logger.warning(f"Pipeline {self.config.name} cancelled: {e.message}")
            await self._finish_unsuccessful(PipelineStatus.CANCELLED, e.message)
            return result(False, steps_completed=steps_completed, error=e.message, warnings=warnings)

        except Exception as e:
            error_message = _cause(e)
            logger.error(
                f"Pipeline {self.config.name} failed: {error_message}",
                extra={"error_context": e.to_dict() if isinstance(e, PipelineException) else {}},
            )
            # Step attempts were already recorded one by one
            if not (isinstance(e, StepExecutionError) and e.attempts > 0):
                if isinstance(e, StepExecutionError):
                    step = e.step_name
                elif isinstance(e, ValidationError):
                    step = "data_quality"
                else:
                    step = "pipeline"
                await self._safely("record run error", self.monitor.record_error(step, e, {"run_id": self.current_run_id}))
            await self._finish_unsuccessful(PipelineStatus.FAILED, error_message)
            return result(False, steps_completed=steps_completed, error=error_message, warnings=warnings)

        finally:
            await self._safely("unlock pipeline", self.state_manager.unlock_pipeline())
            self._active = False
            self._run_lock_id = None
            self.current_run_id = None

    async def shutdown(self) -> None:
        """
        Request a cooperative stop.

        The step in flight finishes; the run stops at the next step boundary.
        The pool is closed and the lock released right away.
        """
        self._shutdown_requested = True
        logger.info(f"Shutdown requested for pipeline {self.config.name}")

        if self.pool is not None:
            await self._safely("close connection pool", self.pool.close())
        if self._active:
            await self._safely("release lock on shutdown", self.state_manager.unlock_pipeline())

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_requested

    def calculate_next_run(self, from_time: Optional[datetime] = None) -> Optional[datetime]:
        """Next scheduled run strictly after from_time (default now)"""
        return self.next_run_calculator.next_run(
            self.config.schedule, from_time or datetime.now(timezone.utc)
        )

    def get_schedule(self) -> Dict[str, Any]:
        return {
            "expression": self.config.schedule,
            "next_run": self.calculate_next_run(),
        }

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _prepare_run(self, resume_from_failure: bool) -> Tuple[Dict[str, Any], Any]:
        """Steps to skip (name -> output) and the input of the first step to run"""
        if resume_from_failure:
            try:
                recovery = await self.state_manager.get_recovery_point(self.config.step_names)
            except SQLAlchemyError as e:
                logger.error(f"Failed to read recovery point for {self.config.name}: {e}")
                recovery = RecoveryPoint(can_recover=False)
            if recovery.can_recover:
                order = self.config.step_names
                resume_at = order.index(recovery.next_step)
                skipped = {
                    name: recovery.step_data[name].get("data")
                    for name in order[:resume_at]
                    if name in recovery.step_data
                }
                await self.monitor.log(
                    LogLevel.INFO,
                    f"Resuming from step {recovery.next_step}",
                    {"last_completed_step": recovery.last_completed_step, "skipped": list(skipped)},
                )
                return skipped, skipped.get(recovery.last_completed_step)

            await self.monitor.log(LogLevel.INFO, "No recovery point found, running all steps")

        await self._checkpoint(
            "clear step data",
            self.state_manager.clear_step_data(owner_lock_id=self._run_lock_id),
        )
        return {}, None

    async def _execute_step(self, step: PipelineStep, input_data: Any, dry_run: bool) -> StepResult:
        """
        Run one step with retry.

        A step gets max_retries retries (none when it is not retryable);
        every failed attempt is recorded. Fatal errors stop at once.
        """
        start_time = utcnow()
        started = time.monotonic()
        max_retries = self.config.max_retries if step.retryable else 0
        attempt = 0

        while True:
            attempt += 1
            attempt_started = time.monotonic()
            await self.monitor.log(
                LogLevel.INFO,
                f"Executing step: {step.name}",
                {"attempt": attempt, "max_attempts": max_retries + 1},
            )

            try:
                data, records = await self._run_capability(step, input_data, dry_run)

            except Exception as e:
                await self.monitor.record_error(
                    step.name, e, {"retry_count": attempt, "config": dict(step.config)}
                )
                await self.monitor.record_step_metrics(
                    step.name,
                    StepMetrics(duration_ms=_elapsed_ms(attempt_started), records_processed=0, success=False),
                )

                if not is_retryable(e):
                    error = f"Step {step.name} failed: {_cause(e)}"
                elif attempt > max_retries:
                    error = f"Step {step.name} failed after {max_retries} retries: {_cause(e)}"
                else:
                    delay = backoff_delay_ms(attempt, self.config.retry_delay_ms, self.config.max_retry_delay_ms)
                    await self.monitor.log(
                        LogLevel.WARNING,
                        f"Retrying step {step.name} after {delay}ms",
                        {"error": _cause(e), "retry_count": attempt, "classification": classify_error(e)},
                    )
                    await self._sleep(delay / 1000)
                    continue

                return StepResult(
                    step_name=step.name,
                    success=False,
                    start_time=start_time,
                    end_time=utcnow(),
                    duration_ms=_elapsed_ms(started),
                    attempts=attempt,
                    error=error,
                )

            duration_ms = _elapsed_ms(attempt_started)
            await self.monitor.record_step_metrics(
                step.name,
                StepMetrics(duration_ms=duration_ms, records_processed=records, success=True),
            )
            logger.info(f"Step {step.name} succeeded: {records} records in {duration_ms}ms")
            return StepResult(
                step_name=step.name,
                success=True,
                start_time=start_time,
                end_time=utcnow(),
                duration_ms=duration_ms,
                records_processed=records,
                attempts=attempt,
                data=data,
            )

    async def _run_capability(self, step: PipelineStep, input_data: Any, dry_run: bool) -> Tuple[Any, int]:
        """Invoke the step's capability, enforcing timeout_ms when set"""
        if step.type == StepType.LOAD and dry_run:
            await self.monitor.log(LogLevel.INFO, f"Dry run: skipping load step {step.name}")
            return input_data, 0

        call = self._dispatch(step, input_data)
        if step.timeout_ms is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=step.timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise StepTimeoutError(
                f"Step {step.name} timed out after {step.timeout_ms}ms",
                context={"step": step.name, "timeout_ms": step.timeout_ms},
            )

    async def _dispatch(self, step: PipelineStep, input_data: Any) -> Tuple[Any, int]:
        config = dict(step.config)

        if step.type == StepType.EXTRACT:
            outcome = await self._capability(self.capabilities.extract, step)(config)
        elif step.type == StepType.TRANSFORM:
            outcome = await self._capability(self.capabilities.transform, step)(input_data, config)
        elif step.type == StepType.LOAD:
            target_table = config.get("target_table", DEFAULT_TARGET_TABLE)
            outcome = await self._capability(self.capabilities.sync, step)(input_data, target_table)
            if not _field(outcome, "success", False):
                raise LoadError(
                    _field(outcome, "error") or f"Sync to {target_table} reported failure",
                    context={"table_name": target_table, "step": step.name},
                )
            return input_data, int(_field(outcome, "records_processed", 0) or 0)
        else:
            handler_name = config.get("handler", step.name)
            outcome = await self._capability(self.capabilities.custom.get(handler_name), step)(input_data, config)

        data = _field(outcome, "data", outcome)
        metadata = _field(outcome, "metadata") or {}
        self._output_metadata = dict(metadata)

        records = metadata.get("record_count")
        if records is None:
            records = len(data) if isinstance(data, list) else 0
        return data, int(records)

    @staticmethod
    def _capability(fn: Optional[Callable], step: PipelineStep) -> Callable:
        if fn is None:
            raise NonRetryableError(
                f"No {step.type.value} capability configured for step {step.name}",
                context={"step": step.name, "type": step.type.value},
            )
        return fn

    # ------------------------------------------------------------------
    # Data quality
    # ------------------------------------------------------------------

    def _check_data_quality(self, output: Any) -> List[PipelineWarning]:
        """
        Gate on the final step output.

        Raises ValidationError for negative metrics or missing identifiers.
        Empty or stale output only produces warnings.
        """
        records = output
        if isinstance(output, dict):
            records = output.get("data", [])
        records = to_jsonable_python(records or [], fallback=str)
        if not isinstance(records, list):
            records = [records]

        if not records:
            return [PipelineWarning(type="no_data", message="Pipeline produced no data")]

        invalid = []
        for record in records:
            if not isinstance(record, dict):
                continue
            negative = any(
                isinstance(record.get(f), (int, float)) and record.get(f) < 0
                for f in METRIC_FIELDS
            )
            missing = any(not record.get(f) for f in IDENTIFIER_FIELDS)
            if negative or missing:
                invalid.append(record)

        if invalid:
            raise ValidationError(
                f"Data quality check failed: Found {len(invalid)} invalid records",
                context={"invalid_records": len(invalid), "sample": invalid[:3]},
            )

        warnings = []
        newest = self._newest_data_time(records)
        if newest is not None:
            age = utcnow() - newest
            max_age = timedelta(hours=self.config.data_max_age_hours)
            if age > max_age:
                warnings.append(
                    PipelineWarning(
                        type="stale_data",
                        message=(
                            f"Data is {int(age.total_seconds() // 3600)} hours old "
                            f"(max {self.config.data_max_age_hours} hours)"
                        ),
                    )
                )
        return warnings

    def _newest_data_time(self, records: List[Any]) -> Optional[datetime]:
        stamp = self._output_metadata.get("last_data_timestamp")
        if stamp:
            value = stamp if isinstance(stamp, datetime) else datetime.fromisoformat(str(stamp).replace("Z", "+00:00"))
            if value.tzinfo is not None:
                value = value.astimezone(timezone.utc).replace(tzinfo=None)
            return value

        dates = []
        for record in records:
            if not isinstance(record, dict):
                continue
            for name in RECORD_DATE_FIELDS:
                if record.get(name):
                    try:
                        dates.append(to_calendar_date(record[name]))
                    except ValueError:
                        logger.debug(f"Unparseable {name} value {record[name]!r}")
                    break
        if not dates:
            return None
        # A record date covers the whole day
        return datetime.combine(max(dates), dt_time.max)

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    async def _finish_unsuccessful(self, status: PipelineStatus, error: str) -> None:
        # Skip the status write if shutdown() already released our lock
        if self.state_manager.lock_id:
            await self._safely(
                f"mark pipeline {status.value}",
                self.state_manager.update_state(owner_lock_id=self._run_lock_id, status=status),
            )
        await self._safely("end monitored run", self.monitor.end_pipeline("failed", error=error))
        await self._record_outcome(False)

    async def _record_outcome(self, success: bool) -> None:
        await self._safely(
            "record run outcome",
            self.state_manager.record_run_outcome(success, self.monitor.error_count),
        )

    async def _collect_alerts(self) -> List[Alert]:
        try:
            return await self.monitor.check_alerts()
        except Exception as e:
            logger.error(f"Alert check failed for {self.config.name}: {e}")
            return []

    async def _checkpoint(self, action: str, awaitable: Awaitable[Any]) -> Any:
        """Run bookkeeping write. Store errors are logged; invalid transitions still abort."""
        try:
            return await awaitable
        except SQLAlchemyError as e:
            logger.error(f"Failed to {action} for {self.config.name}: {e}")
            return None

    async def _safely(self, action: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await awaitable
        except Exception as e:
            logger.error(f"Failed to {action} for {self.config.name}: {e}")
            return None
