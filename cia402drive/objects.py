"""An in-memory object dictionary with cached and device-backed access."""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional


class EntryInvalidError(KeyError):
    """Raised when an object dictionary entry does not exist."""


class LocalEntry:
    """A single object dictionary entry.

    ``reader`` is called by :meth:`get` to fetch a fresh value from the
    device; ``writer`` is called by :meth:`set` to push a value to it.
    Without them the entry behaves as a plain stored value.
    """

    def __init__(
        self,
        value: Any,
        reader: Optional[Callable[[], Any]] = None,
        writer: Optional[Callable[[Any], None]] = None,
    ) -> None:
        self._value = value
        self.reader = reader
        self.writer = writer
        self._lock = threading.Lock()

    def get(self) -> Any:
        """Read the value from the device and update the cache."""
        reader = self.reader
        if reader is not None:
            fresh = reader()
            with self._lock:
                self._value = fresh
        with self._lock:
            return self._value

    def get_cached(self) -> Any:
        """Return the last known value without touching the device."""
        with self._lock:
            return self._value

    def set(self, value: Any) -> None:
        """Store the value and write it to the device."""
        with self._lock:
            self._value = value
        writer = self.writer
        if writer is not None:
            writer(value)

    def set_cached(self, value: Any) -> None:
        """Store the value locally only."""
        with self._lock:
            self._value = value


class ObjectStorage:
    """Maps (index, subindex) pairs to :class:`LocalEntry` objects."""

    def __init__(self) -> None:
        self._entries: dict[tuple[int, int], LocalEntry] = {}
        self._lock = threading.Lock()

    def define(self, index: int, subindex: int, value: Any) -> LocalEntry:
        """Create or replace an entry and return it."""
        entry = LocalEntry(value)
        with self._lock:
            self._entries[(index, subindex)] = entry
        return entry

    def entry(self, index: int, subindex: int = 0) -> LocalEntry:
        """Return an existing entry or raise :class:`EntryInvalidError`."""
        with self._lock:
            try:
                return self._entries[(index, subindex)]
            except KeyError:
                raise EntryInvalidError(
                    f"object {index:04X}sub{subindex:X} is not defined"
                ) from None

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries