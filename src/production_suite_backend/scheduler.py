"""Periodic and on-demand background triggers for the reconciliation passes."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from threading import Event, Lock, Thread
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 15 * 60


class ReconciliationScheduler:
    """
    Runs every pass on a fixed interval in a single daemon thread.

    Thread Safety:
        Passes guard themselves with per-source locks, so ``run_now`` may be
        called while the background loop is mid-pass.

    Args:
        passes: Pass name to callable, run in insertion order
        interval_seconds: Delay between the end of one sweep and the next
        run_on_start: Run a sweep as soon as the thread starts
    """

    def __init__(
        self,
        passes: Dict[str, Callable[[], Any]],
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        run_on_start: bool = True,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.passes = dict(passes)
        self.interval_seconds = interval_seconds
        self.run_on_start = run_on_start
        self._stop = Event()
        self._thread: Optional[Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = Thread(target=self._loop, name="reconciliation-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Reconciliation scheduler started (every {self.interval_seconds:g}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Reconciliation scheduler stopped")

    def run_now(self) -> Dict[str, Any]:
        """
        Run every pass once, synchronously.

        Returns:
            Pass name to its result; a pass that raised maps to None
        """
        results: Dict[str, Any] = {}
        for name, run in self.passes.items():
            try:
                results[name] = run()
            except Exception:  # noqa: BLE001
                logger.exception(f"Scheduled {name} pass failed")
                results[name] = None
        return results

    def _loop(self) -> None:
        if self.run_on_start:
            self.run_now()
        while not self._stop.wait(self.interval_seconds):
            self.run_now()


class OnDemandPass:
    """
    Runs one pass in the background when asked, at most one pending at a time.

    A request made while a run is queued is merged into it. A request made
    while a run is in progress queues exactly one follow-up run, so events
    recorded mid-pass are still picked up.

    Thread Safety:
        ``request`` may be called from any thread; runs happen on a single
        worker thread.

    Args:
        name: Pass name used in log messages
        run: The pass to execute
    """

    def __init__(self, name: str, run: Callable[[], Any]) -> None:
        self.name = name
        self.run = run
        self._lock = Lock()
        self._pending = False
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{name}-pass")

    def request(self) -> Optional[Future]:
        """
        Ask for a run.

        Returns:
            The Future of a newly queued run, or None when one is already pending
        """
        with self._lock:
            if self._pending:
                return None
            self._pending = True
        return self._executor.submit(self._execute)

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)

    def _execute(self) -> Any:
        with self._lock:
            self._pending = False
        try:
            return self.run()
        except Exception:
            logger.exception(f"On-demand {self.name} pass failed")
            raise
