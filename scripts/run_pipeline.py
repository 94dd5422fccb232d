"""
Script to run a configured pipeline once or on its cron schedule

Usage:
    python scripts/run_pipeline.py pipeline.json --client-factory mypkg.clients:make_client
    python scripts/run_pipeline.py pipeline.json --client-factory ... --schedule
    python scripts/run_pipeline.py pipeline.json --client-factory ... --resume --dry-run

pipeline.json holds a PipelineConfig, e.g.
    {
        "name": "sqp-weekly",
        "schedule": "0 */6 * * *",
        "steps": [
            {"name": "extract", "type": "extract", "config": {"sql": "SELECT ..."}},
            {"name": "transform", "type": "transform", "dependencies": ["extract"],
             "config": {"period_type": "weekly"}},
            {"name": "load", "type": "load", "dependencies": ["transform"]}
        ]
    }

The client factory is a zero-argument callable returning a warehouse client
(query / test_connection / estimate_query_cost / close).
"""

import argparse
import asyncio
import importlib
import json
import signal
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.config import settings
from core.database import create_engine, create_session_maker
from core.logging import setup_logging
from pipeline.alerts.webhook import WebhookAlertChannel
from pipeline.extractors.warehouse_extractor import WarehouseExtractor
from pipeline.loaders.postgres_loader import PostgresLoader
from pipeline.monitor import PipelineMonitor
from pipeline.pool import ConnectionPool
from pipeline.runner import PipelineOrchestrator, StepCapabilities
from pipeline.scheduler import PipelineScheduler
from pipeline.state import PipelineStateManager
from pipeline.transformers.period_transformer import PeriodTransformer
from schemas.pipeline import PipelineConfig

logger = logging.getLogger(__name__)


def load_config(path: str) -> PipelineConfig:
    with open(path) as f:
        return PipelineConfig(**json.load(f))


def load_client_factory(target: str):
    """Resolve "package.module:attribute" to the client factory"""
    module_name, _, attribute = target.partition(":")
    if not attribute:
        raise ValueError(f"Client factory must look like module:attribute, got '{target}'")
    return getattr(importlib.import_module(module_name), attribute)


def build_orchestrator(config: PipelineConfig, session_maker, pool: ConnectionPool) -> PipelineOrchestrator:
    alert_channels = list(config.alert_channels)
    if settings.ALERT_WEBHOOK_URL and "webhook" not in alert_channels:
        alert_channels.append("webhook")

    monitor = PipelineMonitor(
        config.name,
        session_maker,
        alert_thresholds=config.alert_thresholds,
        alert_channels=alert_channels,
        enable_alerts=config.enable_alerts,
    )
    if settings.ALERT_WEBHOOK_URL:
        monitor.register_alert_channel(
            "webhook", WebhookAlertChannel(settings.ALERT_WEBHOOK_URL, pipeline_id=config.name)
        )

    return PipelineOrchestrator(
        config=config,
        state_manager=PipelineStateManager(config.name, session_maker),
        monitor=monitor,
        capabilities=StepCapabilities(
            extract=WarehouseExtractor(pool).extract,
            transform=PeriodTransformer().transform,
            sync=PostgresLoader(session_maker).sync,
        ),
        pool=pool,
    )


async def run_pipeline(args: argparse.Namespace) -> int:
    """Run the pipeline and return the process exit code"""
    config = load_config(args.config)
    engine = create_engine(echo=False)
    session_maker = create_session_maker(engine)
    pool = ConnectionPool(load_client_factory(args.client_factory))
    orchestrator = build_orchestrator(config, session_maker, pool)

    try:
        if not args.schedule:
            result = await orchestrator.execute(
                resume_from_failure=args.resume,
                dry_run=args.dry_run,
            )
            if result.success:
                logger.info(
                    f"Pipeline {config.name} succeeded: "
                    f"{result.steps_completed}/{result.total_steps} steps in {result.duration_ms}ms"
                )
            else:
                logger.error(f"Pipeline {config.name} failed: {result.error}")
            for warning in result.warnings:
                logger.warning(f"{warning.type}: {warning.message}")
            return 0 if result.success else 1

        scheduler = PipelineScheduler()
        scheduler.add_pipeline(orchestrator)
        scheduler.start()
        logger.info(f"Next run of {config.name}: {orchestrator.get_schedule()['next_run']}")

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop.set)
        await stop.wait()

        await scheduler.stop()
        return 0

    except Exception as e:
        logger.error(f"Pipeline runner error: {str(e)}")
        return 1
    finally:
        await orchestrator.shutdown()
        await engine.dispose()


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run an SQP sync pipeline")
    parser.add_argument("config", help="Path to the pipeline JSON config")
    parser.add_argument("--client-factory", required=True, help="module:attribute of the warehouse client factory")
    parser.add_argument("--schedule", action="store_true", help="Keep running on the config's cron schedule")
    parser.add_argument("--resume", action="store_true", help="Resume from the last failed run")
    parser.add_argument("--dry-run", action="store_true", help="Skip load steps")
    return parser.parse_args(argv)


if __name__ == "__main__":
    setup_logging()
    sys.exit(asyncio.run(run_pipeline(parse_args())))
