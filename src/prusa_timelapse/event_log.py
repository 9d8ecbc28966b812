"""Bounded in-memory history of monitor lifecycle events."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Iterable


@dataclass(slots=True)
class MonitorEvent:
    """A lifecycle milestone recorded by the monitor."""

    timestamp: float
    category: str
    event: str
    message: str
    job_id: int | None = None
    metadata: dict[str, object | None] | None = None

    def to_dict(self) -> dict[str, object | None]:
        payload: dict[str, object | None] = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        if self.job_id is not None:
            payload["job_id"] = self.job_id
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload


class EventLog:
    """Append-only event history shared by the monitor and the HTTP surface."""

    def __init__(
        self,
        *,
        max_entries: int = 200,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._entries: Deque[MonitorEvent] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._clock = clock

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        job_id: int | None = None,
        metadata: dict[str, object | None] | None = None,
    ) -> MonitorEvent:
        """Append an event and return the stored entry."""

        cleaned_category = category.strip() if isinstance(category, str) else ""
        entry = MonitorEvent(
            timestamp=self._clock(),
            category=cleaned_category or "monitor",
            event=event,
            message=message,
            job_id=job_id,
            metadata=self._clean_metadata(metadata),
        )
        with self._lock:
            self._entries.append(entry)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        category: str | None = None,
    ) -> list[MonitorEvent]:
        """Return the most recent entries, optionally filtered by category."""

        with self._lock:
            entries: Iterable[MonitorEvent] = list(self._entries)
        if category is not None:
            wanted = category.strip()
            if wanted:
                entries = [entry for entry in entries if entry.category == wanted]
        entries = list(entries)
        if limit is not None:
            try:
                limit_value = max(1, int(limit))
            except (TypeError, ValueError):
                limit_value = 1
            entries = entries[-limit_value:]
        return entries

    def events(self) -> list[str]:
        """Return the event names, oldest first."""

        return [entry.event for entry in self.tail()]

    @staticmethod
    def _clean_metadata(
        metadata: dict[str, object | None] | None,
    ) -> dict[str, object | None] | None:
        if not metadata:
            return None
        cleaned: dict[str, object | None] = {}
        for key, value in metadata.items():
            if value is not None:
                cleaned[key] = value
        return cleaned or None


__all__ = ["EventLog", "MonitorEvent"]
