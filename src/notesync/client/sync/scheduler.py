"""Background triggers for sync cycles.

This module provides:
- SyncScheduler: APScheduler jobs that start sync cycles

Triggers:
- periodic tick (every 15 minutes by default)
- local change, debounced (3 seconds by default)
- connectivity restored (pending backoffs are cut short, sync now)
- wake-up at the earliest retry due time

Cycles themselves are exclusive (see SyncOrchestrator.run_cycle); a
debounced trigger that lands on a running cycle is pushed back.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

PERIODIC_JOB = "sync_periodic"
DEBOUNCE_JOB = "sync_debounce"
CONNECTIVITY_JOB = "sync_connectivity"
WAKEUP_JOB = "sync_retry_wakeup"

_JOB_DEFAULTS = {"max_instances": 1, "coalesce": True, "misfire_grace_time": None}


class SyncScheduler:
    """Schedules sync cycles in a background thread."""

    def __init__(
        self,
        run_cycle: Callable[[str], Any],
        next_due_at: Callable[[], float | None] | None = None,
        on_connectivity: Callable[[], Any] | None = None,
        periodic_interval: float = 15 * 60,
        debounce_delay: float = 3.0,
        scheduler: Any = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            run_cycle: Runs one cycle; returns None when one is already running.
            next_due_at: Earliest retry due time (epoch seconds) or None.
            on_connectivity: Called before the connectivity-restored cycle.
            periodic_interval: Seconds between periodic cycles.
            debounce_delay: Seconds between a local change and its cycle.
            scheduler: APScheduler instance (defaults to a BackgroundScheduler).
        """
        self._run_cycle = run_cycle
        self._next_due_at = next_due_at
        self._on_connectivity = on_connectivity
        self._periodic_interval = periodic_interval
        self._debounce_delay = debounce_delay
        self._scheduler = scheduler or BackgroundScheduler(job_defaults=_JOB_DEFAULTS)
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the periodic tick and the background thread."""
        if self._running:
            return
        self._scheduler.add_job(
            self._job,
            trigger=IntervalTrigger(seconds=self._periodic_interval),
            args=["periodic"],
            id=PERIODIC_JOB,
            name="Periodic sync",
            replace_existing=True,
            **_JOB_DEFAULTS,
        )
        self._scheduler.start()
        self._running = True
        logger.info("Sync scheduler started (every %.0fs)", self._periodic_interval)
        self.schedule_wakeup()

    def stop(self) -> None:
        """Stop the scheduler without waiting for a running cycle."""
        if not self._running:
            return
        self._scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Sync scheduler stopped")

    def _schedule_once(self, job_id: str, reason: str, run_at: datetime) -> None:
        self._scheduler.add_job(
            self._job,
            trigger=DateTrigger(run_date=run_at),
            args=[reason],
            id=job_id,
            name=f"Sync ({reason})",
            replace_existing=True,
            **_JOB_DEFAULTS,
        )

    def notify_local_change(self) -> None:
        """A local edit happened: sync after the debounce delay.

        Repeated edits keep pushing the cycle back.
        """
        run_at = datetime.now(timezone.utc) + timedelta(seconds=self._debounce_delay)
        self._schedule_once(DEBOUNCE_JOB, "local-change", run_at)
        logger.debug("Local change, sync in %.1fs", self._debounce_delay)

    def notify_connectivity_restored(self) -> None:
        """The network is back: retry everything now."""
        if self._on_connectivity is not None:
            self._on_connectivity()
        self._schedule_once(CONNECTIVITY_JOB, "connectivity", datetime.now(timezone.utc))
        logger.info("Connectivity restored, syncing now")

    def schedule_wakeup(self) -> None:
        """Schedule a cycle for the earliest retry due time, if any."""
        if self._next_due_at is None:
            return
        due = self._next_due_at()
        if due is None:
            return
        run_at = max(
            datetime.fromtimestamp(due, tz=timezone.utc),
            datetime.now(timezone.utc),
        )
        self._schedule_once(WAKEUP_JOB, "retry", run_at)
        logger.debug("Retry wake-up scheduled at %s", run_at.isoformat())

    def _job(self, reason: str) -> None:
        """Job function for every trigger."""
        try:
            report = self._run_cycle(reason)
            if report is None and reason == "local-change":
                # A cycle was running; make sure this change gets its own
                self.notify_local_change()
        except Exception:
            logger.exception("Error during %s sync", reason)
        finally:
            try:
                self.schedule_wakeup()
            except Exception:
                logger.exception("Could not schedule retry wake-up")
