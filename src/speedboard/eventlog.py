from __future__ import annotations

import logging
from datetime import datetime

from .models import SEVERITIES, LogEntry, Severity

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "danger": logging.ERROR,
}


class EventLog:
    """Bounded, append-only feed of human readable status lines."""

    def __init__(self, limit: int = 50) -> None:
        if limit < 1:
            raise ValueError("limit must be positive")
        self.limit = limit
        self._entries: tuple[LogEntry, ...] = ()

    @property
    def entries(self) -> tuple[LogEntry, ...]:
        return self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, message: str, severity: Severity = "info") -> LogEntry:
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {severity!r}")
        entry = LogEntry(timestamp=datetime.now(), severity=severity, message=message)
        self._entries = (self._entries + (entry,))[-self.limit :]
        logger.log(_LOG_LEVELS[severity], "[%s] %s", severity, message)
        return entry

    def clear(self) -> None:
        self._entries = ()
