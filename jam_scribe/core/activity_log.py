"""Append-only activity log shown to the user.

Every session and upload state transition is written here. Messages are
also forwarded to the ``logging`` module so they land in the process log.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LogMessage:
    id: str
    message: str
    timestamp: datetime
    level: int = logging.INFO


class ActivityLog:
    """Observable, append-only list of LogMessage entries.

    Thread-safe: background upload workers may log directly.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._entries: list[LogMessage] = []
        self._subscribers: list[Callable[[LogMessage], None]] = []
        self._lock = threading.Lock()
        self._logger = logger or log

    @property
    def entries(self) -> list[LogMessage]:
        """Return a copy of all entries, oldest first."""
        with self._lock:
            return list(self._entries)

    def messages(self) -> list[str]:
        return [entry.message for entry in self.entries]

    def log(self, message: str, level: int = logging.INFO) -> LogMessage:
        entry = LogMessage(
            id=uuid.uuid4().hex,
            message=message,
            timestamp=datetime.now(timezone.utc),
            level=level,
        )
        with self._lock:
            self._entries.append(entry)
            subscribers = list(self._subscribers)
        self._logger.log(level, message)

        for callback in subscribers:
            try:
                callback(entry)
            except Exception:
                log.exception("Activity log subscriber failed")
        return entry

    def warning(self, message: str) -> LogMessage:
        return self.log(message, logging.WARNING)

    def error(self, message: str) -> LogMessage:
        return self.log(message, logging.ERROR)

    def subscribe(self, callback: Callable[[LogMessage], None]) -> Callable[[], None]:
        """Register *callback* for new entries. Returns an unsubscribe function."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe
