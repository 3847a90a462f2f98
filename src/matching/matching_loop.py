"""Background thread that runs matcher cycles on a fixed interval."""

import logging
import threading

from core.correlation import with_correlation
from core.exceptions import DispatchError, TransientError
from metrics.prometheus_exporter import dispatch_matching_loop_running

from .dispatch_matcher import DispatchMatcher

logger = logging.getLogger(__name__)


class MatchingLoop:
    """Runs ``DispatchMatcher.propose_matches`` every ``interval_seconds``.

    A failed cycle is logged and the loop continues with the next one;
    nothing a cycle raises stops the thread.
    """

    def __init__(self, matcher: DispatchMatcher, interval_seconds: float) -> None:
        self._matcher = matcher
        self._interval = interval_seconds
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self.cycles = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.is_running:
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run, name="dispatch-matching-loop", daemon=True
            )
            self._thread.start()
        dispatch_matching_loop_running.set(1)
        logger.info("Matching loop started (interval=%.1fs)", self._interval)

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._stop_event.set()
            self._thread = None
        if thread is not None:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Matching loop did not stop within %.1fs", timeout)
        dispatch_matching_loop_running.set(0)
        logger.info("Matching loop stopped")

    def run_once(self) -> int:
        """Run one cycle. Returns the number of rides matched."""
        with with_correlation():
            try:
                matched = self._matcher.propose_matches()
            except TransientError as e:
                logger.warning("Matcher cycle skipped, storage unavailable: %s", e)
                return 0
            except DispatchError as e:
                logger.error("Matcher cycle failed: %s", e)
                return 0
            except Exception:
                logger.exception("Unexpected error in matcher cycle")
                return 0
        self.cycles += 1
        return len(matched)

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self._interval)
