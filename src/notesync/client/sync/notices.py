"""User-facing sync notices.

This module provides:
- Notice types: merges, dead letters, rejected edits, offline reminders,
  completed cycles
- NoticeChannel: thread-safe fan-out of notices to subscribers

Subscribers pull notices from their own queue, so a slow UI never blocks
a sync cycle.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum, auto

logger = logging.getLogger(__name__)


class NoticeKind(Enum):
    """Kind of notice."""

    MERGE = auto()
    DEAD_LETTER = auto()
    VALIDATION = auto()
    OFFLINE_REMINDER = auto()
    SYNC_COMPLETED = auto()


@dataclass(frozen=True)
class Notice:
    """Base class of all notices."""

    kind = NoticeKind.SYNC_COMPLETED

    @property
    def message(self) -> str:
        return ""


@dataclass(frozen=True)
class MergeNotice(Notice):
    """Some records were merged with a concurrent server change."""

    kind = NoticeKind.MERGE
    count: int = 0
    audit_ids: tuple[int, ...] = ()

    @property
    def message(self) -> str:
        noun = "item was" if self.count == 1 else "items were"
        return f"{self.count} {noun} merged with changes from another device"


@dataclass(frozen=True)
class DeadLetterNotice(Notice):
    """A change could not be synced and needs manual intervention."""

    kind = NoticeKind.DEAD_LETTER
    entry_id: int = 0
    entity_type: str = ""
    record_id: str = ""
    reason: str = ""

    @property
    def message(self) -> str:
        return f"Could not sync {self.entity_type} {self.record_id}: {self.reason}"


@dataclass(frozen=True)
class ValidationNotice(Notice):
    """The server rejected a change."""

    kind = NoticeKind.VALIDATION
    entry_id: int = 0
    entity_type: str = ""
    record_id: str = ""
    reason: str = ""

    @property
    def message(self) -> str:
        return f"The server rejected a change to {self.entity_type} {self.record_id}: {self.reason}"


@dataclass(frozen=True)
class OfflineReminderNotice(Notice):
    """No successful sync for a long time."""

    kind = NoticeKind.OFFLINE_REMINDER
    last_success_at: float | None = None
    offline_for: float = 0.0

    @property
    def message(self) -> str:
        hours = int(self.offline_for // 3600)
        return f"Not synced for {hours} hours. Connect to the internet to back up your notes."


@dataclass(frozen=True)
class SyncCompletedNotice(Notice):
    """A sync cycle finished."""

    kind = NoticeKind.SYNC_COMPLETED
    reason: str = ""
    pushed: int = 0
    pulled: int = 0
    failed: int = 0

    @property
    def message(self) -> str:
        return f"Sync complete: {self.pushed} pushed, {self.pulled} pulled"


class Subscription:
    """A subscriber's queue of notices."""

    def __init__(self, channel: NoticeChannel, kinds: frozenset[NoticeKind] | None) -> None:
        self._channel = channel
        self._kinds = kinds
        self._queue: queue.Queue[Notice] = queue.Queue()
        self.closed = False

    def wants(self, notice: Notice) -> bool:
        return self._kinds is None or notice.kind in self._kinds

    def _put(self, notice: Notice) -> None:
        self._queue.put(notice)

    def get(self, timeout: float | None = None) -> Notice | None:
        """Wait for the next notice.

        Returns:
            The notice, or None if none arrived within ``timeout``.
        """
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[Notice]:
        """All notices received so far, without waiting."""
        notices = []
        while True:
            try:
                notices.append(self._queue.get_nowait())
            except queue.Empty:
                return notices

    def close(self) -> None:
        """Stop receiving notices."""
        self._channel._unsubscribe(self)
        self.closed = True

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class NoticeChannel:
    """Fan-out of notices to subscribers.

    Example:
        >>> channel = NoticeChannel()
        >>> sub = channel.subscribe({NoticeKind.MERGE})
        >>> channel.publish(MergeNotice(count=2))
        >>> sub.get(timeout=0).message
        '2 items were merged with changes from another device'
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []

    def subscribe(self, kinds: Iterable[NoticeKind] | None = None) -> Subscription:
        """Subscribe to some (default: all) notice kinds."""
        subscription = Subscription(self, frozenset(kinds) if kinds is not None else None)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(self, notice: Notice) -> int:
        """Deliver a notice to every interested subscriber.

        Returns:
            Number of subscribers that received it.
        """
        with self._lock:
            targets = [s for s in self._subscriptions if s.wants(notice)]
        for subscription in targets:
            subscription._put(notice)
        logger.debug("Published %s to %d subscriber(s)", notice.kind.name, len(targets))
        return len(targets)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)
