"""Process-wide locking and throttling primitives for sync workers."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator

from chatsync.core.config import settings


@dataclass
class _KeyEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    # holders plus waiters; the entry is dropped when this reaches zero
    users: int = 0


class KeyedLocks:
    """
    One lock per string key, created on demand and dropped once unused.

    Used for single-writer-per-key sections (identity upserts) and for the
    one-sync-per-account rule (non-blocking acquire).
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, _KeyEntry] = {}

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _KeyEntry()
                self._locks[key] = entry
            entry.users += 1
            return entry.lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            entry = self._locks[key]
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        """Block until the key's lock is held."""
        lock = self._checkout(key)
        try:
            with lock:
                yield
        finally:
            self._checkin(key)

    def try_acquire(self, key: str) -> bool:
        """Acquire without waiting; False when another holder exists."""
        lock = self._checkout(key)
        if lock.acquire(blocking=False):
            return True
        self._checkin(key)
        return False

    def release(self, key: str) -> None:
        with self._guard:
            entry = self._locks.get(key)
        if entry is None:
            raise RuntimeError(f"Lock for {key} is not held")
        entry.lock.release()
        self._checkin(key)

    def is_locked(self, key: str) -> bool:
        with self._guard:
            entry = self._locks.get(key)
            return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# Bounded pool shared by every outbound Chat/Directory call in the process.
outbound_limiter = threading.BoundedSemaphore(max(1, settings.CHAT_API_MAX_CONCURRENCY))

identity_locks = KeyedLocks()
account_sync_locks = KeyedLocks()
