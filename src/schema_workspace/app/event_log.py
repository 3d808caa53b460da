"""Append-only event log broadcast to observers.

Every entry is also written to the stdlib logger so the service log and the
in-app console tell the same story.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from .models import LogEntry, LogKind

logger = logging.getLogger(__name__)

LogListener = Callable[[tuple[LogEntry, ...]], None]


class EventLog:
    """Newest-first list of structured entries with snapshot subscribers."""

    def __init__(self) -> None:
        self._entries: list[LogEntry] = []
        self._listeners: list[LogListener] = []

    def record(self, kind: LogKind, title: str, data: Any = None) -> LogEntry:
        entry = LogEntry(
            entry_id=str(uuid4()),
            timestamp=datetime.now(tz=UTC),
            kind=kind,
            title=title,
            data=data,
        )
        self._entries.insert(0, entry)
        level = logging.ERROR if kind == "error" else logging.INFO
        logger.log(level, "event_log kind=%s title=%s", kind, title)
        self._notify()
        return entry

    def entries(self) -> tuple[LogEntry, ...]:
        return tuple(self._entries)

    def subscribe(self, listener: LogListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def clear(self) -> None:
        self._entries = []
        self._notify()

    def _notify(self) -> None:
        snapshot = tuple(self._entries)
        for listener in list(self._listeners):
            listener(snapshot)
