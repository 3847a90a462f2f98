"""
Ride Dispatch Worker - Entry Point

Runs the background matcher and a periodic reconciliation sweep against the
configured store until interrupted. Request handlers embed DispatchEngine
directly; this process only needs to run once per deployment.
"""

import logging
import signal
import sys
import threading

from core.exceptions import DispatchError
from dispatch_logging import setup_logging
from engine import DispatchEngine
from settings import Settings, get_settings

logger = logging.getLogger(__name__)

RECONCILE_INTERVAL_SECONDS = 60.0


def build_engine(settings: Settings | None = None) -> DispatchEngine:
    """Configure logging and build an engine from settings (env by default)."""
    settings = settings or get_settings()
    setup_logging(
        level=settings.dispatch.log_level,
        json_output=settings.dispatch.log_format == "json",
        environment=settings.dispatch.environment,
    )
    return DispatchEngine.from_settings(settings)


def run_worker(engine: DispatchEngine, stop_event: threading.Event) -> None:
    engine.start()
    try:
        while not stop_event.wait(RECONCILE_INTERVAL_SECONDS):
            try:
                engine.reconcile()
            except DispatchError as e:
                logger.error("Reconciliation failed: %s", e)
    finally:
        engine.close()


def main() -> int:
    engine = build_engine()
    stop_event = threading.Event()

    def handle_signal(signum: int, _frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    logger.info("Dispatch worker running")
    run_worker(engine, stop_event)
    return 0


if __name__ == "__main__":
    sys.exit(main())
