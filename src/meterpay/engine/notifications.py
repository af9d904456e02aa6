"""Notification log: events emitted by the settlement core.

Notifications are the equivalent of transaction logs: they are emitted by
the component performing an operation and are part of that operation's
atomic unit, so a failed call leaves no notification behind. The service
layer drains committed notifications into the durable EventLog.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from meterpay.persistence.event_log import EventKind


@dataclass(frozen=True)
class Notification:
    """A single emitted event."""
    sequence: int
    kind: EventKind
    actor: str
    payload: dict[str, Any]
    timestamp: int


class NotificationLog:
    """Ordered, transaction-aware list of emitted notifications."""

    def __init__(self) -> None:
        self._items: list[Notification] = []

    def emit(
        self,
        kind: EventKind,
        actor: str,
        payload: dict[str, Any],
        timestamp: int,
    ) -> Notification:
        item = Notification(
            sequence=len(self._items) + 1,
            kind=kind,
            actor=actor,
            payload=payload,
            timestamp=timestamp,
        )
        self._items.append(item)
        return item

    def all(self, kind: Optional[EventKind] = None) -> list[Notification]:
        if kind is None:
            return list(self._items)
        return [n for n in self._items if n.kind == kind]

    def since(self, sequence: int) -> list[Notification]:
        """Return notifications with a sequence number above ``sequence``."""
        return [n for n in self._items if n.sequence > sequence]

    @property
    def count(self) -> int:
        return len(self._items)

    @property
    def last(self) -> Optional[Notification]:
        return self._items[-1] if self._items else None

    def snapshot(self) -> int:
        return len(self._items)

    def restore(self, snapshot: int) -> None:
        del self._items[snapshot:]
