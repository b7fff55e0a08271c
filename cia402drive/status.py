"""Status and diagnostic reports collected while driving a layer."""

from __future__ import annotations

import enum
import threading


class Level(enum.IntEnum):
    """Severity of a layer status; higher values are worse."""

    OK = 0
    WARN = 1
    ERROR = 2
    STALE = 3
    UNBOUNDED = 3


class LayerStatus:
    """Accumulates the worst level reached and the reasons given for it."""

    def __init__(self) -> None:
        self._level = Level.OK
        self._reasons: list[str] = []
        self._lock = threading.Lock()

    @property
    def level(self) -> Level:
        with self._lock:
            return self._level

    @property
    def reason(self) -> str:
        with self._lock:
            return "; ".join(self._reasons)

    def _escalate(self, level: Level, reason: str) -> None:
        with self._lock:
            if level > self._level:
                self._level = level
            if reason:
                self._reasons.append(reason)

    def warn(self, reason: str) -> None:
        """Record a warning; the level becomes at least WARN."""
        self._escalate(Level.WARN, reason)

    def error(self, reason: str) -> None:
        """Record an error; the level becomes at least ERROR."""
        self._escalate(Level.ERROR, reason)

    def bounded(self, level: Level) -> bool:
        """True if the current level is no worse than ``level``."""
        return self.level <= level

    def equals(self, level: Level) -> bool:
        """True if the current level is exactly ``level``."""
        return self.level == level

    def __repr__(self) -> str:
        return f"{type(self).__name__}(level={self.level.name}, reason={self.reason!r})"


class LayerReport(LayerStatus):
    """A status that also carries named diagnostic values."""

    def __init__(self) -> None:
        super().__init__()
        self._values: list[tuple[str, str]] = []

    @property
    def values(self) -> list[tuple[str, str]]:
        with self._lock:
            return list(self._values)

    def add(self, key: str, value: object) -> None:
        """Attach a diagnostic value, stored as text."""
        with self._lock:
            self._values.append((key, str(value)))