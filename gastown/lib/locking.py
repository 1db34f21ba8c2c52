"""
Lock management for Gas Town.

Two layers:
- KeyedLocks: in-process exclusive sections keyed by entity id (one per hook,
  rig or record). Used to serialize hook transitions and slings.
- patrol_lock: flock on a file so only one patrol loop drives a town.
"""

import fcntl
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path

from .constants import STATE_DIRNAME


class LockTimeout(Exception):
    """Lock acquisition timed out."""
    pass


class KeyedLocks:
    """Registry of reentrant locks, one per key.

    Locks are created on first use and never dropped, so two threads asking
    for the same key always contend on the same lock object.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str, timeout: float = -1):
        """Hold the lock for key. timeout < 0 waits forever."""
        lock = self._lock_for(key)
        if not lock.acquire(timeout=timeout):
            raise LockTimeout(f"Could not acquire lock for {key} within {timeout}s")
        try:
            yield
        finally:
            lock.release()


LOCK_POLL_SECONDS = 0.5


@contextmanager
def file_lock(lock_file: Path, timeout: float, lock_name: str, poll: float = LOCK_POLL_SECONDS):
    """Hold an exclusive flock on lock_file, polling until timeout.

    The file is left in place after release. Removing it would let a second
    process lock a fresh inode at the same path while the first still holds
    the old one.
    """
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + timeout

    with open(lock_file, 'a+') as fh:
        while True:
            try:
                fcntl.flock(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise LockTimeout(f"{lock_name} still held after {timeout}s") from None
                time.sleep(poll)
        try:
            fh.seek(0)
            fh.truncate()
            fh.write(f"{os.getpid()}\n")
            fh.flush()
            yield
        finally:
            fcntl.flock(fh, fcntl.LOCK_UN)


@contextmanager
def patrol_lock(town_dir: Path, timeout: float = 5):
    """Only one patrol loop drives a town; held for the lifetime of the loop."""
    with file_lock(town_dir / STATE_DIRNAME / "locks" / "patrol.lock", timeout,
                f"patrol lock for {town_dir}"):
        yield
