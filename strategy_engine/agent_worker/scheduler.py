"""
Periodic runner: one background thread per engine, one tick per interval.

Ticks run sequentially on the runner's thread, so a slow cycle can never
overlap the next one. Ticks that come due while a cycle is still running are
dropped (counted in coalesced_ticks) and the schedule resumes at the next
future slot, so a congested chain never builds a backlog. A tick that raises
is logged and the loop continues; only stop() ends it.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable

from strategy_engine.engine_logging import get_logger

logger = get_logger(__name__)

SHUTDOWN_JOIN_TIMEOUT_SEC = 15.0
MIN_INTERVAL_SEC = 0.05


class PeriodicRunner:
    """Run tick() every interval_sec on a daemon thread until stop()."""

    def __init__(
        self,
        name: str,
        interval_sec: float,
        tick: Callable[[], Any],
        *,
        run_immediately: bool = True,
    ) -> None:
        self.name = name
        self.interval_sec = max(MIN_INTERVAL_SEC, float(interval_sec))
        self._tick = tick
        self._run_immediately = run_immediately
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.tick_count = 0
        self.coalesced_ticks = 0
        self.last_tick_at: float | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_tick(self) -> None:
        self.tick_count += 1
        self.last_tick_at = time.time()
        try:
            self._tick()
        except Exception as e:
            logger.exception("periodic_tick_failed", runner=self.name, tick=self.tick_count, error=str(e))

    def run(self, stop_event: threading.Event | None = None) -> None:
        """Blocking loop; returns once stop_event (or stop()) is set."""
        stop = stop_event or self._stop_event
        logger.info("periodic_runner_started", runner=self.name, interval_sec=self.interval_sec)
        next_due = time.monotonic() if self._run_immediately else time.monotonic() + self.interval_sec
        while not stop.is_set():
            delay = next_due - time.monotonic()
            if delay > 0:
                stop.wait(timeout=delay)
                continue
            self._run_tick()
            next_due += self.interval_sec
            now = time.monotonic()
            if next_due <= now:
                missed = int((now - next_due) // self.interval_sec) + 1
                self.coalesced_ticks += missed
                logger.debug("periodic_ticks_coalesced", runner=self.name, missed=missed)
                next_due += missed * self.interval_sec
        logger.info("periodic_runner_stopped", runner=self.name, tick_count=self.tick_count)

    def start(self) -> threading.Thread:
        if self.running:
            return self._thread  # type: ignore[return-value]
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name=f"{self.name}-runner", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, join_timeout: float = SHUTDOWN_JOIN_TIMEOUT_SEC) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is None:
            return
        thread.join(timeout=join_timeout)
        if thread.is_alive():
            logger.warning("periodic_runner_shutdown_timeout", runner=self.name, timeout_sec=join_timeout)
        self._thread = None
