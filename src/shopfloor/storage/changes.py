"""In-process change-notification feed.

Repositories publish a ChangeEvent after every write; consumers subscribe
per table and receive at least one callback per change. This stands in for
the hosted backend's realtime channel, so the query layer only depends on
the subscribe/unsubscribe contract.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger(__name__)

ANY_TABLE = "*"


class ChangeKind(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    kind: ChangeKind
    record_id: Optional[str] = None


ChangeCallback = Callable[[ChangeEvent], None]


class Subscription:
    """Handle returned by ChangeFeed.subscribe(). Unsubscribing is idempotent."""

    def __init__(self, feed: ChangeFeed, table: str, callback: ChangeCallback) -> None:
        self._feed = feed
        self.table = table
        self.callback = callback
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._feed._remove(self)


class ChangeFeed:
    """Table-scoped publish/subscribe registry."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[Subscription]] = {}

    def subscribe(self, table: str, callback: ChangeCallback) -> Subscription:
        """Register *callback* for changes to *table* (``"*"`` for every table)."""
        sub = Subscription(self, table, callback)
        self._subscriptions.setdefault(table, []).append(sub)
        logger.debug("Subscribed to %s (active=%d)", table, self.active_count)
        return sub

    def publish(self, event: ChangeEvent) -> None:
        """Deliver *event* to subscribers of its table and of ``"*"``.

        A failing callback is logged and does not stop delivery to the rest.
        """
        targets = list(self._subscriptions.get(event.table, ())) + list(
            self._subscriptions.get(ANY_TABLE, ())
        )
        for sub in targets:
            if not sub.active:
                continue
            try:
                sub.callback(event)
            except Exception as exc:
                logger.error(
                    "Change callback for %s raised %s: %s",
                    event.table,
                    type(exc).__name__,
                    exc,
                )

    def emit(self, table: str, kind: ChangeKind, record_id: str | None = None) -> None:
        self.publish(ChangeEvent(table=table, kind=kind, record_id=record_id))

    def subscriber_count(self, table: str) -> int:
        return len(self._subscriptions.get(table, ()))

    @property
    def active_count(self) -> int:
        return sum(len(subs) for subs in self._subscriptions.values())

    def clear(self) -> None:
        """Drop every subscription."""
        for subs in list(self._subscriptions.values()):
            for sub in list(subs):
                sub._active = False
        self._subscriptions.clear()

    def _remove(self, sub: Subscription) -> None:
        subs = self._subscriptions.get(sub.table)
        if not subs:
            return
        try:
            subs.remove(sub)
        except ValueError:
            return
        if not subs:
            del self._subscriptions[sub.table]
        logger.debug("Unsubscribed from %s (active=%d)", sub.table, self.active_count)
