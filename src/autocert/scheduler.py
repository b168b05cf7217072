"""Background thread running certificate renewal at a fixed interval."""

import threading
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from autocert._logging import Timer, get_logger

logger = get_logger(__name__)

# Minimum allowed interval to prevent tight loops
MIN_INTERVAL = 0.01


class RenewalScheduler:
    """Runs a job every interval on a daemon thread.

    The wait for the next run starts only after the previous run has
    finished, so runs never overlap. stop() interrupts the wait.

    Usage::

        scheduler = RenewalScheduler(manager.renew, timedelta(days=30))
        scheduler.start()
        ...
        scheduler.stop()

    Args:
        job: Callable to run. Raising or returning False counts as a
            failure; failures are logged and counted.
        interval: Time between the end of one run and the start of the next.
        name: Thread name, also used in log records.
    """

    def __init__(
        self,
        job: Callable[[], object],
        interval: timedelta | float,
        name: str = "autocert-renewal",
    ):
        seconds = interval.total_seconds() if isinstance(interval, timedelta) else float(interval)
        if seconds < MIN_INTERVAL:
            raise ValueError(f"interval must be >= {MIN_INTERVAL}s, got {seconds}")

        self.job = job
        self.interval_seconds = seconds
        self.name = name

        self.run_count = 0
        self.fail_count = 0
        self.last_attempt: datetime | None = None
        self.last_success: datetime | None = None

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        """True while the scheduler thread is alive."""
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the scheduler thread (no-op if already running)."""
        with self._lock:
            if self.is_running:
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._run_loop, name=self.name, daemon=True)
            self._thread.start()
        logger.info(
            "Renewal scheduler started",
            extra={"job": self.name, "interval_seconds": self.interval_seconds},
        )

    def stop(self, timeout: float | None = 5.0) -> bool:
        """Signal the thread to stop and wait for it.

        A run in progress is allowed to finish first.

        Returns:
            True if the thread has exited.
        """
        with self._lock:
            thread = self._thread
            self._stop_event.set()
        if thread is None:
            return True

        thread.join(timeout=timeout)
        stopped = not thread.is_alive()
        if stopped:
            logger.info("Renewal scheduler stopped", extra={"job": self.name})
        else:
            logger.warning("Renewal scheduler did not stop in time", extra={"job": self.name})
        return stopped

    def run_once(self) -> bool:
        """Run the job now, on the calling thread.

        Returns:
            True if the job completed without raising or returning False.
        """
        self.last_attempt = datetime.now(timezone.utc)
        try:
            with Timer() as timer:
                result = self.job()
        except Exception:
            self.fail_count += 1
            logger.exception("Scheduled job failed", extra={"job": self.name})
            return False
        finally:
            self.run_count += 1

        if result is False:
            self.fail_count += 1
            logger.warning("Scheduled job reported failure", extra={"job": self.name, "elapsed_ms": timer.elapsed_ms})
            return False

        self.last_success = datetime.now(timezone.utc)
        logger.debug("Scheduled job finished", extra={"job": self.name, "elapsed_ms": timer.elapsed_ms})
        return True

    def _run_loop(self) -> None:
        # Event.wait returns True once stop() has been called
        while not self._stop_event.wait(self.interval_seconds):
            self.run_once()

    def __enter__(self) -> "RenewalScheduler":
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        self.stop()
