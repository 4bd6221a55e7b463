"""Contract shared by every timer store backend.

A store holds exactly one JSON-like record under a fixed key. All three
operations are asynchronous in the callback sense: results and errors are
delivered later on the Qt event loop thread, never by raising out of the
call. A store may deliver synchronously (the in-memory one does), so callers
must not assume the callback runs after the call returns.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from st.common.logger import log

Record = dict[str, Any]
SnapshotCallback = Callable[["Record | None"], None]
ErrorCallback = Callable[[Exception], None]


class StoreError(RuntimeError):
    """A read or write against the store failed (network, disk, bad payload)."""


def log_write_error(error: Exception) -> None:
    log.error(f"Timer store write failed: {error}", exc_info=error)


class TimerStore(ABC):

    def __init__(self, key: str = "timer"):
        self.key = key

    @abstractmethod
    def subscribe(self, on_snapshot: SnapshotCallback) -> Callable[[], None]:
        """Push the current record (or None when absent) now, then again after every change.

        Returns a callable that cancels the subscription.
        """

    @abstractmethod
    def read(self, on_result: SnapshotCallback, on_error: ErrorCallback) -> None:
        """One-shot fetch of the current record."""

    @abstractmethod
    def write(self, fields: Record, on_error: ErrorCallback | None = None) -> None:
        """Merge ``fields`` into the record, leaving every other field as it is."""

    def close(self) -> None:
        """Release sockets, watchers and timers. Safe to call more than once."""
