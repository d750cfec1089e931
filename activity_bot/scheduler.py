"""
Scheduler — fires the orchestrator once, or on a cron cadence.

Single-flight: a trigger that arrives while a Run is still in flight is
skipped and recorded, never queued and never run concurrently.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog
from apscheduler.triggers.cron import CronTrigger

from activity_bot.errors import ConfigError
from activity_bot.orchestrator import Orchestrator, Run

log = structlog.get_logger()

HISTORY_SIZE = 50


@dataclass(frozen=True)
class SkippedTrigger:
    fired_at: datetime
    in_flight_since: Optional[datetime]


class Scheduler:
    """Owns the in-flight guard for one orchestrator.

    Args:
        orchestrator:  executes one Run per call to `run()`.
        cron_schedule: standard 5-field crontab expression.
        tz:            timezone the cron expression is evaluated in.
        clock:         returns the current aware datetime (tests inject a fixed one).
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        cron_schedule: str,
        tz: str = "UTC",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.orchestrator = orchestrator
        self.cron_schedule = cron_schedule
        try:
            self._trigger = CronTrigger.from_crontab(cron_schedule, timezone=tz)
        except ValueError as e:
            raise ConfigError(f"Invalid cron_schedule {cron_schedule!r}: {e}") from e
        self._clock = clock
        self._in_flight = threading.Lock()
        self._in_flight_since: Optional[datetime] = None
        self._worker: Optional[threading.Thread] = None
        self._stop = threading.Event()

        # Recent history only; Runs are not kept beyond reporting.
        self.skipped: deque = deque(maxlen=HISTORY_SIZE)
        self.completed: deque = deque(maxlen=HISTORY_SIZE)
        self.skip_count = 0

    @property
    def busy(self) -> bool:
        return self._in_flight.locked()

    # ------------------------------------------------------------------
    # One-shot mode
    # ------------------------------------------------------------------

    def run_once(self) -> Optional[Run]:
        """Execute exactly one Run synchronously. Returns None if one is already in flight."""
        if not self._in_flight.acquire(blocking=False):
            self._record_skip(self._clock())
            return None
        self._in_flight_since = self._clock()
        try:
            return self._execute()
        finally:
            self._release()

    # ------------------------------------------------------------------
    # Continuous mode
    # ------------------------------------------------------------------

    def trigger(self, fired_at: Optional[datetime] = None) -> bool:
        """Start a Run on a worker thread unless one is in flight.

        Returns True if a Run was started, False if the trigger was skipped.
        """
        fired_at = fired_at or self._clock()
        if not self._in_flight.acquire(blocking=False):
            self._record_skip(fired_at)
            return False
        self._in_flight_since = fired_at
        log.info("scheduler.triggered", fired_at=fired_at.isoformat())

        def work():
            try:
                self._execute()
            except Exception as e:
                log.error("scheduler.run_error", error=str(e), error_type=type(e).__name__)
            finally:
                self._release()

        self._worker = threading.Thread(target=work, name="activity-run", daemon=True)
        self._worker.start()
        return True

    def run_forever(self) -> None:
        """Fire on every cron tick until `stop()`; waits for the in-flight Run before returning."""
        log.info("scheduler.started", schedule=self.cron_schedule)
        previous = None
        while not self._stop.is_set():
            now = self._clock()
            fire_at = self._trigger.get_next_fire_time(previous, now)
            if fire_at is None:
                break
            delay = max((fire_at - now).total_seconds(), 0)
            log.info("scheduler.next_trigger", at=fire_at.isoformat(), in_seconds=round(delay))
            if self._stop.wait(delay):
                break
            previous = fire_at
            self.trigger(fire_at)

        self.wait()
        log.info("scheduler.stopped", skipped=self.skip_count)

    def stop(self) -> None:
        """Stop issuing triggers. Safe to call from a signal handler."""
        self._stop.set()

    def wait(self, timeout: Optional[float] = None) -> None:
        """Block until the in-flight Run, if any, reaches a terminal state."""
        worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout)

    # ------------------------------------------------------------------

    def _execute(self) -> Run:
        run = self.orchestrator.run()
        self.completed.append(run)
        if run.succeeded:
            log.info("scheduler.run_finished", state=run.state.value, summary=run.describe())
        else:
            log.error("scheduler.run_finished", state=run.state.value, summary=run.describe())
        return run

    def _release(self) -> None:
        self._in_flight_since = None
        self._in_flight.release()

    def _record_skip(self, fired_at: datetime) -> None:
        skip = SkippedTrigger(fired_at=fired_at, in_flight_since=self._in_flight_since)
        self.skipped.append(skip)
        self.skip_count += 1
        log.warning("scheduler.trigger_skipped",
                    fired_at=fired_at.isoformat(),
                    skipped_total=self.skip_count,
                    in_flight_since=(skip.in_flight_since.isoformat()
                                     if skip.in_flight_since else None))
