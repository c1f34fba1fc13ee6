"""
Sync Scheduler
===============
Background thread that drives the Sync Manager:
  1. On start (immediate cycle)
  2. Every N minutes thereafter
  3. Whenever an on-demand sync request is queued (polled every few seconds)

Single-flight: a tick that finds a cycle still running is skipped and
logged, never queued.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Optional

log = logging.getLogger("investra")

# How often the scheduler thread wakes up to see if it's time (seconds)
_TICK_INTERVAL = 1.0


class SyncScheduler:
    """Runs sync cycles on an interval with single-flight protection."""

    def __init__(self, manager, interval_minutes: float = 5, poll_requests: bool = True,
                 request_poll_seconds: float = 10, run_on_start: bool = True):
        self.manager = manager
        self.interval_minutes = interval_minutes
        self.poll_requests = poll_requests
        self.request_poll_seconds = request_poll_seconds
        self.run_on_start = run_on_start

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._cycle_lock = threading.Lock()
        self._lock = threading.Lock()
        self._last_summary: Optional[dict] = None
        self._skipped_ticks = 0
        self._cycles_run = 0

    @property
    def last_summary(self) -> Optional[dict]:
        with self._lock:
            return self._last_summary

    @property
    def skipped_ticks(self) -> int:
        with self._lock:
            return self._skipped_ticks

    @property
    def cycles_run(self) -> int:
        with self._lock:
            return self._cycles_run

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_cycle(self, trigger: str) -> Optional[dict]:
        """Run one cycle unless one is already in flight. Returns None when skipped."""
        if not self._cycle_lock.acquire(blocking=False):
            with self._lock:
                self._skipped_ticks += 1
            log.warning(f"Scheduler: {trigger} tick skipped, previous cycle still running")
            return None
        try:
            summary = self.manager.sync_all_configurations(trigger=trigger)
            with self._lock:
                self._last_summary = summary
                self._cycles_run += 1
            return summary
        finally:
            self._cycle_lock.release()

    def _poll_requests(self):
        if not self._cycle_lock.acquire(blocking=False):
            return  # Picked up on a later poll
        try:
            handled = self.manager.process_sync_requests()
            if handled:
                log.info(f"Scheduler: handled {handled} sync request(s)")
        finally:
            self._cycle_lock.release()

    def tick(self, trigger: str = "scheduled") -> Optional[dict]:
        """Fire one tick from any thread; skipped if a cycle is in flight."""
        return self._run_cycle(trigger)

    def _run(self):
        """Main scheduler loop."""
        interval = self.interval_minutes * 60
        next_cycle = time.monotonic() if self.run_on_start else time.monotonic() + interval
        next_poll = time.monotonic() + self.request_poll_seconds

        while not self._stop_event.is_set():
            try:
                now = time.monotonic()
                if now >= next_cycle:
                    next_cycle = now + interval
                    self._run_cycle(f"interval_{self.interval_minutes:g}m "
                                    f"({datetime.now().strftime('%H:%M')})")
                if self.poll_requests and now >= next_poll:
                    next_poll = now + self.request_poll_seconds
                    self._poll_requests()
            except Exception as e:
                log.error(f"Scheduler loop error: {e}", exc_info=True)

            # Sleep in small increments for responsive shutdown
            self._stop_event.wait(timeout=_TICK_INTERVAL)

    def start(self, interval_minutes: Optional[float] = None):
        """Start the scheduler background thread."""
        if interval_minutes is not None:
            self.interval_minutes = interval_minutes
        if self.running:
            log.warning("Scheduler already running")
            return

        self._stop_event.clear()
        self.manager.reset_shutdown()
        self._thread = threading.Thread(
            target=self._run,
            name="InvestraSyncScheduler",
            daemon=True,
        )
        self._thread.start()
        log.info(f"Scheduler started (every {self.interval_minutes:g} min)")

    def stop(self, timeout: float = 30):
        """Stop ticking, let the in-flight message finish, and join the thread."""
        self._stop_event.set()
        self.manager.request_shutdown()
        if self._thread:
            self._thread.join(timeout=timeout)
            log.info("Scheduler stopped")

    def run_once(self) -> dict:
        """Run one cycle now, bypassing the timer (waits for any in-flight cycle)."""
        with self._cycle_lock:
            summary = self.manager.sync_all_configurations(trigger="run_once")
        with self._lock:
            self._last_summary = summary
            self._cycles_run += 1
        return summary

    def wait(self):
        """Block until stop() is called or the thread dies."""
        while self.running and not self._stop_event.is_set():
            self._stop_event.wait(timeout=_TICK_INTERVAL)
