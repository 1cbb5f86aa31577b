"""Long-offline reminder.

Reminds the user when the device has not completed a sync for longer than
a threshold (24 h by default). A dismissed reminder stays quiet for a
snooze period (8 h by default). State lives in the local store so it
survives restarts.
"""

from __future__ import annotations

import logging
import time

from notesync.client.state import (
    LAST_SUCCESS_AT,
    REMINDER_DISMISSED_UNTIL,
    LocalRecordStore,
)
from notesync.client.sync.notices import OfflineReminderNotice
from notesync.core.types import Clock

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 24 * 3600.0
DEFAULT_SNOOZE = 8 * 3600.0


class OfflineReminder:
    """Tracks the last successful sync and decides when to remind."""

    def __init__(
        self,
        store: LocalRecordStore,
        clock: Clock = time.time,
        threshold: float = DEFAULT_THRESHOLD,
        snooze: float = DEFAULT_SNOOZE,
    ) -> None:
        self._store = store
        self._clock = clock
        self._threshold = threshold
        self._snooze = snooze

    @property
    def last_success_at(self) -> float | None:
        return self._store.get_float(LAST_SUCCESS_AT)

    def record_success(self) -> None:
        """Note a completed sync; clears any snooze."""
        self._store.set_float(LAST_SUCCESS_AT, self._clock())
        self._store.set_float(REMINDER_DISMISSED_UNTIL, None)

    def offline_for(self) -> float | None:
        """Seconds since the last successful sync, None if never synced."""
        last = self.last_success_at
        if last is None:
            return None
        return max(0.0, self._clock() - last)

    def should_remind(self) -> bool:
        """Whether the reminder is due now.

        A device that never synced is not reminded; there is nothing
        to lose yet.
        """
        elapsed = self.offline_for()
        if elapsed is None or elapsed <= self._threshold:
            return False
        dismissed_until = self._store.get_float(REMINDER_DISMISSED_UNTIL)
        return dismissed_until is None or self._clock() >= dismissed_until

    def check(self) -> OfflineReminderNotice | None:
        """Build the reminder notice if it is due."""
        if not self.should_remind():
            return None
        elapsed = self.offline_for() or 0.0
        logger.info("No successful sync for %.1f hours", elapsed / 3600)
        return OfflineReminderNotice(
            last_success_at=self.last_success_at,
            offline_for=elapsed,
        )

    def dismiss(self) -> float:
        """Snooze the reminder.

        Returns:
            Time until which the reminder stays quiet.
        """
        until = self._clock() + self._snooze
        self._store.set_float(REMINDER_DISMISSED_UNTIL, until)
        return until
