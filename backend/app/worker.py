"""Standalone worker process.

Runs the worker pool (and, when ENABLE_CRON_JOBS is set, the stale-sync
trigger) without the HTTP API:

    cd backend && python -m app.worker
"""

import signal
import threading

from app.config import get_settings
from app.engine import build_engine
from app.logging_config import get_logger, setup_logging


logger = get_logger("worker")


def main() -> None:
    setup_logging()
    settings = get_settings()
    engine = build_engine(settings)

    stop = threading.Event()

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        stop.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    logger.info(f"Starting {settings.app_name} worker...")
    engine.start()
    try:
        while not stop.wait(settings.cron_interval_seconds):
            if settings.enable_cron_jobs:
                try:
                    engine.scheduler.enqueue_stale_syncs()
                except Exception:
                    logger.exception("Scheduled sync pass failed")
    finally:
        engine.shutdown()


if __name__ == "__main__":
    main()
