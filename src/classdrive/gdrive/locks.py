"""Per-student mutual exclusion for token refresh.

Two upload workers must never refresh the same student's access token at
the same time: both would persist, and whichever wrote last could leave a
token that the other one already replaced. The registry hands out one
lock per student id so refreshes for a student are serialized while
different students proceed in parallel.

Example:
    from classdrive.gdrive.locks import StudentLockRegistry

    locks = StudentLockRegistry()
    with locks.hold(student_id):
        # re-read credentials, refresh if still expired, persist
        ...
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class StudentLockRegistry:
    """Thread-safe registry of per-student locks.

    Locks are created lazily and kept for the life of the registry. The
    registry itself is guarded by a single lock that is only held while
    looking up or creating an entry, never while a student's lock is held.
    """

    def __init__(self) -> None:
        self._locks: Dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, student_id: int) -> threading.Lock:
        """Return the lock owned by ``student_id``, creating it on first use."""
        with self._guard:
            lock = self._locks.get(student_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[student_id] = lock
            return lock

    @contextmanager
    def hold(self, student_id: int) -> Iterator[None]:
        """Hold the student's lock for the duration of the block."""
        lock = self.lock_for(student_id)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
