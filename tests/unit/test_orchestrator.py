"""
Unit tests for the pipeline orchestrator with mocked state and monitor
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, call

import pytest

from sqlalchemy.exc import OperationalError

from core.exceptions import AuthenticationError, NetworkError, StateTransitionError
from models.base import AlertSeverity, AlertType, PipelineStatus
from pipeline.runner import (
    ALREADY_RUNNING,
    SHUTDOWN_REQUESTED,
    PipelineOrchestrator,
    StepCapabilities,
)
from pipeline.transformers.period_transformer import PeriodTransformer
from schemas.pipeline import Alert, PipelineConfig, RecoveryPoint


def make_state_manager():
    manager = MagicMock()
    manager.lock_id = "lock-1"
    manager.lock_pipeline = AsyncMock(return_value=True)
    manager.refresh_lock = AsyncMock(return_value=True)
    manager.get_recovery_point = AsyncMock(return_value=RecoveryPoint())
    for name in (
        "update_state",
        "save_step_data",
        "clear_step_data",
        "unlock_pipeline",
        "record_run_outcome",
    ):
        setattr(manager, name, AsyncMock())
    return manager


def make_monitor():
    monitor = MagicMock()
    monitor.error_count = 0
    monitor.start_pipeline = AsyncMock(return_value="run-1")
    monitor.check_alerts = AsyncMock(return_value=[])
    for name in ("end_pipeline", "record_step_metrics", "record_error", "log", "update_data_freshness"):
        setattr(monitor, name, AsyncMock())
    monitor.get_current_metrics.return_value = {"error_count": 0}
    monitor.get_throughput.return_value = 0.0
    return monitor


def statuses(state_manager):
    """Every status the orchestrator wrote, in order"""
    return [
        c.kwargs["status"]
        for c in state_manager.update_state.await_args_list
        if "status" in c.kwargs
    ]


@pytest.fixture
def capabilities(sqp_rows):
    return StepCapabilities(
        extract=AsyncMock(return_value={"data": sqp_rows, "metadata": {"record_count": len(sqp_rows)}}),
        transform=AsyncMock(side_effect=PeriodTransformer().transform),
        sync=AsyncMock(return_value={"success": True, "records_processed": 2}),
    )


def make_orchestrator(config, capabilities, state_manager=None, monitor=None, sleep=None):
    return PipelineOrchestrator(
        config=config,
        state_manager=state_manager or make_state_manager(),
        monitor=monitor or make_monitor(),
        capabilities=capabilities,
        sleep=sleep or AsyncMock(),
    )


class TestSuccessfulRun:

    @pytest.mark.asyncio
    async def test_runs_all_steps_in_order(self, pipeline_config, capabilities):
        orchestrator = make_orchestrator(pipeline_config, capabilities)

        result = await orchestrator.execute()

        assert result.success is True
        assert result.error is None
        assert result.steps_completed == 3
        assert result.total_steps == 3
        assert result.run_id == "run-1"
        capabilities.extract.assert_awaited_once()
        capabilities.transform.assert_awaited_once()
        capabilities.sync.assert_awaited_once()

        # Load receives the transform output
        synced, target_table = capabilities.sync.await_args.args
        assert target_table == "sqp_period_metrics"
        assert len(synced) == 2

        state_manager = orchestrator.state_manager
        assert statuses(state_manager) == [PipelineStatus.RUNNING, PipelineStatus.COMPLETED]
        assert state_manager.save_step_data.await_count == 3
        state_manager.unlock_pipeline.assert_awaited_once()
        orchestrator.monitor.end_pipeline.assert_awaited_once_with("success")

    @pytest.mark.asyncio
    async def test_old_data_produces_stale_warning(self, pipeline_config, capabilities):
        result = await make_orchestrator(pipeline_config, capabilities).execute()

        assert result.success is True
        assert [w.type for w in result.warnings] == ["stale_data"]

    @pytest.mark.asyncio
    async def test_empty_output_produces_no_data_warning(self, pipeline_config, capabilities):
        capabilities.extract.return_value = {"data": [], "metadata": {"record_count": 0}}

        result = await make_orchestrator(pipeline_config, capabilities).execute()

        assert result.success is True
        assert [w.type for w in result.warnings] == ["no_data"]

    @pytest.mark.asyncio
    async def test_dry_run_skips_load(self, pipeline_config, capabilities):
        result = await make_orchestrator(pipeline_config, capabilities).execute(dry_run=True)

        assert result.success is True
        assert result.steps_completed == 3
        capabilities.sync.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_resume_skips_completed_steps(self, pipeline_config, capabilities, sqp_rows):
        state_manager = make_state_manager()
        state_manager.get_recovery_point.return_value = RecoveryPoint(
            can_recover=True,
            last_completed_step="extract",
            next_step="transform",
            step_data={"extract": {"completed": True, "data": sqp_rows}},
        )
        orchestrator = make_orchestrator(pipeline_config, capabilities, state_manager=state_manager)

        result = await orchestrator.execute(resume_from_failure=True)

        assert result.success is True
        assert result.steps_completed == 3
        capabilities.extract.assert_not_awaited()
        assert capabilities.transform.await_args.args[0] == sqp_rows
        state_manager.clear_step_data.assert_not_awaited()


    @pytest.mark.asyncio
    async def test_alerts_checked_before_run_is_closed(self, pipeline_config, capabilities):
        orchestrator = make_orchestrator(pipeline_config, capabilities)
        state_manager, monitor = orchestrator.state_manager, orchestrator.monitor
        slow_run = Alert(
            type=AlertType.EXECUTION_TIME,
            severity=AlertSeverity.WARNING,
            message="Execution time exceeded threshold (61 minutes)",
        )

        async def alerts_while_open():
            monitor.end_pipeline.assert_not_awaited()
            monitor.update_data_freshness.assert_not_awaited()
            assert PipelineStatus.COMPLETED not in statuses(state_manager)
            return [slow_run]

        monitor.check_alerts.side_effect = alerts_while_open

        result = await orchestrator.execute()

        assert result.success is True
        assert result.alerts == [slow_run]
        monitor.end_pipeline.assert_awaited_once_with("success")


class TestPersistenceFailures:
    """State store hiccups never change the outcome of a run"""

    @pytest.mark.asyncio
    async def test_checkpoint_errors_are_logged(self, pipeline_config, capabilities):
        state_manager = make_state_manager()
        locked = OperationalError("UPDATE pipeline_states", {}, Exception("database is locked"))
        state_manager.save_step_data.side_effect = locked
        state_manager.clear_step_data.side_effect = locked
        orchestrator = make_orchestrator(pipeline_config, capabilities, state_manager=state_manager)

        result = await orchestrator.execute()

        assert result.success is True, result.error
        assert result.steps_completed == 3
        assert state_manager.save_step_data.await_count == 3
        assert statuses(state_manager) == [PipelineStatus.RUNNING, PipelineStatus.COMPLETED]

    @pytest.mark.asyncio
    async def test_status_write_errors_are_logged(self, pipeline_config, capabilities):
        state_manager = make_state_manager()
        state_manager.update_state.side_effect = OperationalError("UPDATE pipeline_states", {}, Exception("disk I/O error"))
        orchestrator = make_orchestrator(pipeline_config, capabilities, state_manager=state_manager)

        result = await orchestrator.execute()

        assert result.success is True, result.error
        state_manager.unlock_pipeline.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_recovery_point_read_error_runs_all_steps(self, pipeline_config, capabilities):
        state_manager = make_state_manager()
        state_manager.get_recovery_point.side_effect = OperationalError("SELECT", {}, Exception("database is locked"))
        orchestrator = make_orchestrator(pipeline_config, capabilities, state_manager=state_manager)

        result = await orchestrator.execute(resume_from_failure=True)

        assert result.success is True
        capabilities.extract.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_invalid_transition_still_fails_the_run(self, pipeline_config, capabilities):
        state_manager = make_state_manager()
        state_manager.update_state.side_effect = StateTransitionError("Invalid state transition from idle to running")
        orchestrator = make_orchestrator(pipeline_config, capabilities, state_manager=state_manager)

        result = await orchestrator.execute()

        assert result.success is False
        assert result.error == "Invalid state transition from idle to running"
        capabilities.extract.assert_not_awaited()
        state_manager.unlock_pipeline.assert_awaited_once()


class TestStepFailures:

    @pytest.mark.asyncio
    async def test_exhausted_retries_stop_the_pipeline(self, pipeline_config, capabilities):
        capabilities.extract.side_effect = NetworkError("connection reset")
        sleep = AsyncMock()
        orchestrator = make_orchestrator(pipeline_config, capabilities, sleep=sleep)

        result = await orchestrator.execute()

        assert result.success is False
        assert result.steps_completed == 0
        assert result.error == "Step extract failed after 3 retries: connection reset"
        assert capabilities.extract.await_count == 4
        capabilities.transform.assert_not_awaited()
        capabilities.sync.assert_not_awaited()

        # Backoff 1ms, 2ms, 4ms
        assert sleep.await_args_list == [call(0.001), call(0.002), call(0.004)]
        # One error per attempt, none added for the pipeline as a whole
        assert orchestrator.monitor.record_error.await_count == 4
        assert statuses(orchestrator.state_manager)[-1] == PipelineStatus.FAILED
        orchestrator.state_manager.unlock_pipeline.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_fatal_error_is_not_retried(self, pipeline_config, capabilities):
        capabilities.extract.side_effect = AuthenticationError("invalid credentials")
        sleep = AsyncMock()
        orchestrator = make_orchestrator(pipeline_config, capabilities, sleep=sleep)

        result = await orchestrator.execute()

        assert result.success is False
        assert result.error == "Step extract failed: invalid credentials"
        assert capabilities.extract.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_transient_error_then_success(self, pipeline_config, capabilities, sqp_rows):
        capabilities.extract.side_effect = [
            TimeoutError("warehouse timed out"),
            {"data": sqp_rows, "metadata": {"record_count": 3}},
        ]
        orchestrator = make_orchestrator(pipeline_config, capabilities)

        result = await orchestrator.execute()

        assert result.success is True
        assert capabilities.extract.await_count == 2
        assert orchestrator.monitor.record_error.await_count == 1

    @pytest.mark.asyncio
    async def test_step_timeout(self, capabilities):
        async def slow_extract(config):
            await asyncio.sleep(1)

        config = PipelineConfig(
            name="timeout",
            schedule="* * * * *",
            max_retries=0,
            steps=[{"name": "extract", "type": "extract", "timeout_ms": 10}],
        )
        capabilities.extract = slow_extract

        result = await make_orchestrator(config, capabilities).execute()

        assert result.success is False
        assert "Step extract timed out after 10ms" in result.error

    @pytest.mark.asyncio
    async def test_failed_sync_is_a_load_error(self, pipeline_config, capabilities):
        capabilities.sync.return_value = {"success": False, "error": "disk full"}

        result = await make_orchestrator(pipeline_config, capabilities).execute()

        assert result.success is False
        assert result.steps_completed == 2
        assert result.error.endswith("disk full")

    @pytest.mark.asyncio
    async def test_missing_capability(self, capabilities):
        config = PipelineConfig(
            name="custom",
            schedule="* * * * *",
            steps=[{"name": "enrich", "type": "custom"}],
        )

        result = await make_orchestrator(config, capabilities).execute()

        assert result.success is False
        assert result.error == "Step enrich failed: No custom capability configured for step enrich"

    @pytest.mark.asyncio
    async def test_custom_handler(self, capabilities):
        handler = AsyncMock(return_value={"data": [{"asin": "B1", "query": "q"}], "metadata": {}})
        capabilities.custom["enrich"] = handler
        config = PipelineConfig(
            name="custom",
            schedule="* * * * *",
            steps=[{"name": "enrich", "type": "custom", "config": {"handler": "enrich"}}],
        )

        result = await make_orchestrator(config, capabilities).execute()

        assert result.success is True
        handler.assert_awaited_once()


class TestDataQuality:

    @pytest.mark.asyncio
    async def test_invalid_records_fail_the_run(self, pipeline_config, capabilities):
        capabilities.transform = AsyncMock(
            return_value={
                "data": [
                    {"asin": "B1", "query": "q", "total_impressions": -5},
                    {"asin": "B2", "query": "q", "total_impressions": 5},
                ],
                "metadata": {},
            }
        )
        orchestrator = make_orchestrator(pipeline_config, capabilities)

        result = await orchestrator.execute()

        assert result.success is False
        assert result.steps_completed == 3
        assert result.error == "Data quality check failed: Found 1 invalid records"
        assert orchestrator.monitor.record_error.await_args.args[0] == "data_quality"

    @pytest.mark.asyncio
    async def test_skip_validation(self, pipeline_config, capabilities):
        capabilities.transform = AsyncMock(return_value={"data": [{"asin": "", "query": "q"}]})

        result = await make_orchestrator(pipeline_config, capabilities).execute(skip_validation=True)

        assert result.success is True


class TestConcurrencyAndShutdown:

    @pytest.mark.asyncio
    async def test_second_run_is_refused(self, pipeline_config, capabilities):
        state_manager = make_state_manager()
        state_manager.lock_pipeline.side_effect = [True, False]
        orchestrator = make_orchestrator(pipeline_config, capabilities, state_manager=state_manager)

        first, second = await asyncio.gather(orchestrator.execute(), orchestrator.execute())

        assert first.success is True
        assert second.success is False
        assert second.error == ALREADY_RUNNING
        orchestrator.monitor.start_pipeline.assert_awaited_once()
        capabilities.extract.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_shutdown_stops_at_next_step(self, pipeline_config, capabilities, sqp_rows):
        orchestrator = make_orchestrator(pipeline_config, capabilities)

        async def extract_then_shutdown(config):
            await orchestrator.shutdown()
            return {"data": sqp_rows, "metadata": {}}

        capabilities.extract.side_effect = extract_then_shutdown

        result = await orchestrator.execute()

        assert result.success is False
        assert result.error == SHUTDOWN_REQUESTED
        assert result.steps_completed == 1
        capabilities.transform.assert_not_awaited()
        assert PipelineStatus.CANCELLED in statuses(orchestrator.state_manager)
        assert orchestrator.shutdown_requested

        # No new runs after shutdown
        again = await orchestrator.execute()
        assert again.error == SHUTDOWN_REQUESTED

    @pytest.mark.asyncio
    async def test_shutdown_during_last_step_cancels_the_run(self, pipeline_config, capabilities):
        orchestrator = make_orchestrator(pipeline_config, capabilities)
        state_manager = orchestrator.state_manager

        async def unlock():
            state_manager.lock_id = None

        state_manager.unlock_pipeline.side_effect = unlock

        async def sync_then_shutdown(data, target_table):
            await orchestrator.shutdown()
            return {"success": True, "records_processed": 2}

        capabilities.sync.side_effect = sync_then_shutdown

        result = await orchestrator.execute()

        assert result.success is False
        assert result.error == SHUTDOWN_REQUESTED
        assert result.steps_completed == 3
        assert statuses(state_manager) == [PipelineStatus.RUNNING]
        orchestrator.monitor.check_alerts.assert_not_awaited()
        orchestrator.monitor.end_pipeline.assert_awaited_once_with("failed", error=SHUTDOWN_REQUESTED)

    @pytest.mark.asyncio
    async def test_lock_errors_count_as_already_running(self, pipeline_config, capabilities):
        state_manager = make_state_manager()
        state_manager.lock_pipeline.side_effect = RuntimeError("store down")

        result = await make_orchestrator(pipeline_config, capabilities, state_manager=state_manager).execute()

        assert result.error == ALREADY_RUNNING
        state_manager.unlock_pipeline.assert_not_awaited()


def test_calculate_next_run(pipeline_config, capabilities):
    orchestrator = make_orchestrator(pipeline_config, capabilities)
    next_run = orchestrator.calculate_next_run(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))
    assert next_run == datetime(2024, 1, 1, 18, 0, tzinfo=timezone.utc)
    assert orchestrator.get_schedule()["expression"] == "0 */6 * * *"
