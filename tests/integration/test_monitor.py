"""
Integration tests for run metrics, alerting and analytics
"""

import uuid
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select, update

from models.base import AlertSeverity, AlertType, LogLevel, RunStatus, utcnow
from models.pipeline_event import PipelineErrorRecord, PipelineLogRecord
from models.pipeline_run import PipelineRunMetrics
from pipeline.monitor import PipelineMonitor
from schemas.pipeline import AlertThresholds, StepMetrics

MB = 1024 * 1024


async def seed_runs(session_maker, failed_steps, runs=10, steps_per_run=10, pipeline_id="sqp-weekly"):
    """Persist finished runs with failed_steps failures spread over them"""
    remaining = failed_steps
    async with session_maker() as session:
        for run in range(runs):
            steps = {}
            for step in range(steps_per_run):
                success = True
                if remaining > 0:
                    success = False
                    remaining -= 1
                steps[f"step_{step}"] = {"duration_ms": 10, "records_processed": 1, "success": success}
            session.add(
                PipelineRunMetrics(
                    run_id=str(uuid.uuid4()),
                    pipeline_id=pipeline_id,
                    status=RunStatus.COMPLETED,
                    start_time=utcnow(),
                    end_time=utcnow(),
                    duration_ms=1_000,
                    steps=steps,
                    total_records_processed=steps_per_run,
                )
            )
        await session.commit()


async def seed_durations(session_maker, durations, pipeline_id="sqp-weekly"):
    async with session_maker() as session:
        for duration in durations:
            session.add(
                PipelineRunMetrics(
                    run_id=str(uuid.uuid4()),
                    pipeline_id=pipeline_id,
                    status=RunStatus.COMPLETED,
                    start_time=utcnow(),
                    duration_ms=duration,
                    steps={},
                )
            )
        await session.commit()


def make_monitor(session_maker, **thresholds):
    return PipelineMonitor(
        "sqp-weekly",
        session_maker,
        alert_thresholds=AlertThresholds(**thresholds),
        log_level="debug",
    )


class TestErrorRateAlert:

    @pytest.mark.asyncio
    async def test_alert_at_threshold(self, session_maker):
        await seed_runs(session_maker, failed_steps=5)
        monitor = make_monitor(session_maker, error_rate=0.05)

        alerts = await monitor.check_alerts()

        assert len(alerts) == 1
        assert alerts[0].type == AlertType.ERROR_RATE
        assert alerts[0].severity == AlertSeverity.CRITICAL
        assert alerts[0].message == "Error rate (5.00%) exceeds threshold (5.00%)"
        assert await monitor.get_error_rate() == pytest.approx(0.05)

    @pytest.mark.asyncio
    async def test_no_alert_below_threshold(self, session_maker):
        await seed_runs(session_maker, failed_steps=4)
        monitor = make_monitor(session_maker, error_rate=0.05)

        assert await monitor.check_alerts() == []

    @pytest.mark.asyncio
    async def test_only_last_ten_runs_count(self, session_maker):
        await seed_runs(session_maker, failed_steps=10, runs=1)
        await seed_runs(session_maker, failed_steps=0, runs=10)
        monitor = make_monitor(session_maker, error_rate=0.05)

        assert await monitor.get_error_rate() == 0.0


class TestOtherAlerts:

    @pytest.mark.asyncio
    async def test_execution_time(self, session_maker):
        monitor = make_monitor(session_maker, execution_time_ms=3_600_000)
        await monitor.start_pipeline()
        monitor.run_start = utcnow() - timedelta(minutes=90)

        alerts = await monitor.evaluate_alerts()

        assert [a.type for a in alerts] == [AlertType.EXECUTION_TIME]
        assert alerts[0].message == "Execution time exceeded threshold (90 minutes)"
        assert alerts[0].severity == AlertSeverity.WARNING

    @pytest.mark.asyncio
    async def test_data_freshness(self, session_maker):
        monitor = make_monitor(session_maker, data_freshness_ms=86_400_000)
        await monitor.update_data_freshness(utcnow() - timedelta(hours=48))

        alerts = await monitor.evaluate_alerts()

        assert [a.type for a in alerts] == [AlertType.DATA_FRESHNESS]
        assert alerts[0].message == "Data is stale (48 hours old)"

        await monitor.update_data_freshness()
        assert await monitor.evaluate_alerts() == []

    @pytest.mark.asyncio
    async def test_memory_usage(self, session_maker):
        monitor = make_monitor(session_maker, memory_usage_bytes=512 * MB)
        monitor.memory_probe = lambda: 600 * MB

        alerts = await monitor.evaluate_alerts()

        assert alerts[0].type == AlertType.MEMORY_USAGE
        assert alerts[0].message == "Memory usage high (600MB)"

    @pytest.mark.asyncio
    async def test_independent_checks_all_reported(self, session_maker):
        await seed_runs(session_maker, failed_steps=50)
        monitor = make_monitor(session_maker, memory_usage_bytes=1)
        await monitor.update_data_freshness(utcnow() - timedelta(days=3))

        alerts = await monitor.evaluate_alerts()

        assert {a.type for a in alerts} == {
            AlertType.ERROR_RATE,
            AlertType.DATA_FRESHNESS,
            AlertType.MEMORY_USAGE,
        }


class TestAlertDispatch:

    @pytest.mark.asyncio
    async def test_configured_channels_receive_alerts(self, session_maker):
        await seed_runs(session_maker, failed_steps=10)
        monitor = PipelineMonitor(
            "sqp-weekly",
            session_maker,
            alert_thresholds=AlertThresholds(error_rate=0.05),
            alert_channels=["webhook", "broken", "missing"],
        )
        webhook = AsyncMock()
        monitor.register_alert_channel("webhook", webhook)
        monitor.register_alert_channel("broken", AsyncMock(side_effect=RuntimeError("smtp down")))

        alerts = await monitor.check_alerts()

        assert len(alerts) == 1
        webhook.assert_awaited_once_with(alerts[0])

    @pytest.mark.asyncio
    async def test_disabled_alerts(self, session_maker):
        await seed_runs(session_maker, failed_steps=10)
        monitor = PipelineMonitor(
            "sqp-weekly",
            session_maker,
            alert_thresholds=AlertThresholds(error_rate=0.05),
            enable_alerts=False,
        )

        assert await monitor.check_alerts() == []

    @pytest.mark.asyncio
    async def test_unregistered_channel_gets_nothing(self, session_maker):
        await seed_runs(session_maker, failed_steps=10)
        monitor = make_monitor(session_maker, error_rate=0.05)
        monitor.alert_channels = ["webhook"]
        webhook = AsyncMock()
        monitor.register_alert_channel("webhook", webhook)
        monitor.unregister_alert_channel("webhook")

        await monitor.check_alerts()

        webhook.assert_not_awaited()


class TestRunLifecycle:

    @pytest.mark.asyncio
    async def test_run_metrics_persisted(self, session_maker):
        monitor = make_monitor(session_maker)
        run_id = await monitor.start_pipeline()
        await monitor.record_step_metrics(
            "extract", StepMetrics(duration_ms=120, records_processed=40, success=True)
        )
        await monitor.record_step_metrics("transform", {"duration_ms": 30, "records_processed": 8, "success": True})
        await monitor.end_pipeline("success")

        async with session_maker() as session:
            run = (
                await session.execute(select(PipelineRunMetrics).where(PipelineRunMetrics.run_id == run_id))
            ).scalar_one()

        assert run.status == RunStatus.COMPLETED
        assert run.total_records_processed == 48
        assert set(run.steps) == {"extract", "transform"}
        assert run.duration_ms is not None
        assert monitor.run_id is None
        assert monitor.last_run_id == run_id

    @pytest.mark.asyncio
    async def test_latest_attempt_wins(self, session_maker):
        monitor = make_monitor(session_maker)
        await monitor.start_pipeline()
        await monitor.record_step_metrics("extract", StepMetrics(success=False))
        await monitor.record_step_metrics("extract", StepMetrics(records_processed=5, success=True))

        current = monitor.get_current_metrics()

        assert current["steps"]["extract"]["success"] is True
        assert current["total_records_processed"] == 5

    @pytest.mark.asyncio
    async def test_record_error(self, session_maker):
        monitor = make_monitor(session_maker)
        run_id = await monitor.start_pipeline()
        try:
            raise ConnectionError("socket closed")
        except ConnectionError as e:
            await monitor.record_error("extract", e, {"retry_count": 1, "when": utcnow()})

        errors = await monitor.get_recent_errors()

        assert monitor.error_count == 1
        assert len(errors) == 1
        assert errors[0]["run_id"] == run_id
        assert errors[0]["step"] == "extract"
        assert errors[0]["error"] == "socket closed"
        assert errors[0]["context"]["retry_count"] == 1

        async with session_maker() as session:
            record = (await session.execute(select(PipelineErrorRecord))).scalar_one()
        assert "ConnectionError" in record.stack

    @pytest.mark.asyncio
    async def test_log_level_filter(self, session_maker):
        monitor = PipelineMonitor("sqp-weekly", session_maker, log_level="warning")

        await monitor.log(LogLevel.INFO, "ignored")
        await monitor.log(LogLevel.WARNING, "kept", {"rows": 3})
        await monitor.log("error", "also kept")

        async with session_maker() as session:
            logs = (await session.execute(select(PipelineLogRecord).order_by(PipelineLogRecord.id))).scalars().all()
        assert [(log.level, log.message) for log in logs] == [("warning", "kept"), ("error", "also kept")]
        assert logs[0].log_metadata == {"rows": 3}

    @pytest.mark.asyncio
    async def test_unknown_run_status(self, session_maker):
        monitor = make_monitor(session_maker)
        await monitor.start_pipeline()
        with pytest.raises(ValueError):
            await monitor.end_pipeline("exploded")


class TestAnalytics:

    @pytest.mark.asyncio
    async def test_anomalous_duration(self, session_maker):
        await seed_durations(session_maker, [1_000, 1_100, 900, 1_000, 1_000])
        monitor = make_monitor(session_maker)

        slow = await monitor.analyze_performance(current_duration_ms=5_000)
        normal = await monitor.analyze_performance(current_duration_ms=1_050)

        assert slow.is_anomalous is True
        assert slow.baseline_mean_ms == pytest.approx(1_000)
        assert slow.recommendation is not None
        assert normal.is_anomalous is False

    @pytest.mark.asyncio
    async def test_no_baseline(self, session_maker):
        await seed_durations(session_maker, [1_000])
        monitor = make_monitor(session_maker)

        analysis = await monitor.analyze_performance(current_duration_ms=50_000)

        assert analysis.is_anomalous is False
        assert analysis.baseline_mean_ms is None

    @pytest.mark.asyncio
    async def test_throughput(self, session_maker):
        monitor = make_monitor(session_maker)
        assert monitor.get_throughput() == 0.0

        monitor.last_duration_ms = 2_000
        monitor.last_records_processed = 500
        assert monitor.get_throughput() == pytest.approx(250.0)

    @pytest.mark.asyncio
    async def test_dashboard_metrics(self, session_maker):
        await seed_durations(session_maker, [1_000, 3_000])
        monitor = make_monitor(session_maker)
        await monitor.start_pipeline()
        await monitor.end_pipeline("failed", error="extract failed")

        dashboard = await monitor.get_dashboard_metrics()

        assert dashboard.total_runs == 3
        assert dashboard.success_rate == pytest.approx(2 / 3)
        assert dashboard.current_status == "failed"

    @pytest.mark.asyncio
    async def test_summary(self, session_maker):
        await seed_runs(session_maker, failed_steps=10)
        monitor = make_monitor(session_maker)

        summary = await monitor.get_summary()

        assert summary["pipeline_id"] == "sqp-weekly"
        assert summary["error_rate"] == pytest.approx(0.1)
        assert summary["throughput"] == 0.0
        assert summary["performance"]["is_anomalous"] is False
        assert summary["current"]["run_id"] is None
        assert summary["data_freshness"] is None

    @pytest.mark.asyncio
    async def test_resource_metrics(self, session_maker):
        metrics = make_monitor(session_maker).get_resource_metrics()
        assert metrics["rss_bytes"] > 0
        assert metrics["num_threads"] >= 1

    @pytest.mark.asyncio
    async def test_cleanup_old_data(self, session_maker):
        await seed_runs(session_maker, failed_steps=0, runs=3)
        monitor = make_monitor(session_maker)
        await monitor.log(LogLevel.ERROR, "old failure")

        async with session_maker() as session:
            await session.execute(update(PipelineRunMetrics).values(created_at=utcnow() - timedelta(days=60)))
            await session.execute(update(PipelineLogRecord).values(timestamp=utcnow() - timedelta(days=60)))
            await session.commit()

        removed = await monitor.cleanup_old_data(days_to_keep=30)

        assert removed == {"metrics": 3, "errors": 0, "logs": 1}
