"""Thread-safe set of in-flight identifiers.

Used for sub-workflow cycle detection (`{parentRunId}_sub_{childId}`) and for the
scheduler's currently-running workflow ids. Instances are owned explicitly and
injected; shared_in_flight() is only the process-wide default.
"""

from __future__ import annotations

import threading


class InFlightRegistry:
    """Set with an atomic check-and-insert."""

    def __init__(self):
        self._items: set[str] = set()
        self._lock = threading.Lock()

    def try_acquire(self, key: str) -> bool:
        """Insert key unless already present. Returns True if inserted."""
        with self._lock:
            if key in self._items:
                return False
            self._items.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._items.discard(key)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def snapshot(self) -> set[str]:
        with self._lock:
            return set(self._items)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


_shared = InFlightRegistry()


def shared_in_flight() -> InFlightRegistry:
    """Process-wide registry used when a caller does not inject one."""
    return _shared
