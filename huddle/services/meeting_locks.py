from __future__ import annotations

from contextlib import contextmanager
from threading import Lock, RLock
from typing import Dict, Iterator, List


class MeetingLockRegistry:
    """In-process mutual exclusion keyed by meeting id.

    Capacity checks, session opens and closes, and lifecycle recomputation for
    one meeting all run under that meeting's lock. Locks for different
    meetings are independent; an entry is dropped once nobody holds or waits
    on it.
    """

    def __init__(self) -> None:
        self._guard = Lock()
        # meeting_id -> [lock, holder/waiter count]
        self._entries: Dict[str, List] = {}

    def _acquire_entry(self, meeting_id: str) -> RLock:
        with self._guard:
            entry = self._entries.get(meeting_id)
            if entry is None:
                entry = [RLock(), 0]
                self._entries[meeting_id] = entry
            entry[1] += 1
            return entry[0]

    def _release_entry(self, meeting_id: str) -> None:
        with self._guard:
            entry = self._entries.get(meeting_id)
            if entry is None:
                return
            entry[1] -= 1
            if entry[1] <= 0:
                self._entries.pop(meeting_id, None)

    @contextmanager
    def hold(self, meeting_id: str) -> Iterator[None]:
        lock = self._acquire_entry(meeting_id)
        try:
            with lock:
                yield
        finally:
            self._release_entry(meeting_id)

    def active_count(self) -> int:
        with self._guard:
            return len(self._entries)


meeting_locks = MeetingLockRegistry()
