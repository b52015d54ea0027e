"""
Background worker for orchestrator housekeeping.

This worker runs continuously and:
- Deletes execution events older than the retention window
- Handles errors gracefully without crashing
- Supports graceful shutdown on SIGINT/SIGTERM
- Uses jitter so several replicas do not clean up in lockstep
- Loads configuration from environment and config files

Run once (e.g. from cron) with ``--once``.
"""

import argparse
import asyncio
import logging
import os
import random
import signal
import sys
from dataclasses import dataclass
from datetime import timedelta
from typing import NoReturn

from src.core.config.loader import get_config
from src.core.config.settings import load_settings
from src.core.services.events import EventPublisher
from src.core.storage.postgres import Database, get_db
from src.core.utils.time import utcnow_naive

logger = logging.getLogger(__name__)

# Global event for graceful shutdown
shutdown_event = asyncio.Event()


@dataclass
class WorkerConfig:
    """Configuration for the worker."""

    interval_seconds: int
    jitter_seconds: int
    retention_days: int
    log_level: str


def load_worker_config() -> WorkerConfig:
    """
    Load worker configuration from environment variables and config files.

    Environment variables take precedence over config files.
    """
    config = get_config()
    worker_config = config.get("workers", {}).get("maintenance_worker", {})

    return WorkerConfig(
        interval_seconds=int(
            os.environ.get(
                "WORKER_INTERVAL_SECONDS",
                worker_config.get("interval_seconds", 3600),
            )
        ),
        jitter_seconds=int(
            os.environ.get(
                "WORKER_JITTER_SECONDS",
                worker_config.get("jitter_seconds", 60),
            )
        ),
        retention_days=int(
            os.environ.get(
                "EVENT_RETENTION_DAYS",
                worker_config.get("retention_days", load_settings(config).events.retention_days),
            )
        ),
        log_level=os.environ.get(
            "WORKER_LOG_LEVEL",
            worker_config.get("log_level", "INFO"),
        ),
    )


def setup_logging(log_level: str) -> None:
    """Configure logging for the worker."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def handle_signal(signum: int, frame: object) -> None:
    """Handle SIGINT/SIGTERM for graceful shutdown."""
    signal_name = signal.Signals(signum).name
    logger.info(f"Received signal {signal_name}, shutting down gracefully...")
    shutdown_event.set()


async def run_cycle(db: Database, retention_days: int) -> int:
    """
    Apply event retention once.

    Returns:
        Number of events deleted.
    """
    cutoff = utcnow_naive() - timedelta(days=retention_days)
    publisher = EventPublisher(db)
    return await publisher.delete_older_than(cutoff)


async def run_worker(db: Database, config: WorkerConfig) -> None:
    """
    Main worker loop.

    Applies retention at a configurable interval with jitter. A failed
    cycle is logged and retried on the next one.
    """
    logger.info(
        f"Starting worker with interval={config.interval_seconds}s, "
        f"jitter={config.jitter_seconds}s, retention_days={config.retention_days}"
    )

    while not shutdown_event.is_set():
        try:
            deleted = await run_cycle(db, config.retention_days)
            logger.info(f"Maintenance cycle complete: events_deleted={deleted}")
        except Exception as e:
            logger.error(f"Error in maintenance cycle: {e}", exc_info=True)

        jitter = random.uniform(0, config.jitter_seconds)
        sleep_time = config.interval_seconds + jitter
        logger.info(
            f"Sleeping for {sleep_time:.1f}s "
            f"(base={config.interval_seconds}s + jitter={jitter:.1f}s)"
        )

        # Wake early on shutdown
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=sleep_time)
        except TimeoutError:
            pass

    logger.info("Worker stopped")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Orchestrator maintenance worker")
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Delete events older than this many days (overrides config)",
    )
    return parser.parse_args(argv)


async def main_async(argv: list[str] | None = None) -> None:
    """
    Async entrypoint for the worker.

    Loads configuration, connects to the database and runs one cycle or
    the worker loop.
    """
    args = parse_args(argv)
    config = load_worker_config()
    if args.retention_days is not None:
        config.retention_days = args.retention_days
    setup_logging(config.log_level)

    logger.info("Maintenance Worker starting...")
    logger.info(f"Configuration: {config}")

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    try:
        db = await get_db()
        logger.info("Database connection established")
    except Exception as e:
        logger.critical(f"Cannot connect to database: {e}", exc_info=True)
        sys.exit(1)

    try:
        if args.once:
            deleted = await run_cycle(db, config.retention_days)
            logger.info(f"Deleted {deleted} events")
        else:
            await run_worker(db, config)
    finally:
        try:
            await db.disconnect()
            logger.info("Database connection closed")
        except Exception as e:
            logger.error(f"Error closing database connection: {e}")


def main() -> NoReturn:
    """Synchronous wrapper that starts the async event loop."""
    try:
        asyncio.run(main_async())
    except SystemExit:
        raise
    except Exception as e:
        logger.critical(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)

    sys.exit(0)


if __name__ == "__main__":
    main()
