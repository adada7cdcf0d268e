from __future__ import annotations

from contextlib import contextmanager
import logging
import os
import threading
from typing import Dict, Iterator, Optional

from errors import SlotBusyError

logger = logging.getLogger(__name__)

SLOT_LOCK_TIMEOUT = float(os.getenv("SLOT_LOCK_TIMEOUT", "10"))


def slot_key(slot_id: int) -> str:
    return f"slot:{slot_id}"


def turf_key(turf_id: int) -> str:
    return f"turf:{turf_id}"


def username_key(username: str) -> str:
    return f"username:{username}"


def email_key(email: str) -> str:
    return f"email:{email}"


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class KeyedLock:
    """Mutex per resource key. Entries are dropped once nobody holds or waits on them."""

    def __init__(self, timeout: Optional[float] = None) -> None:
        self.timeout = SLOT_LOCK_TIMEOUT if timeout is None else timeout
        self._guard = threading.Lock()
        self._entries: Dict[str, _Entry] = {}

    def _checkout(self, key: str) -> _Entry:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1
            return entry

    def _checkin(self, key: str, entry: _Entry) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                self._entries.pop(key, None)

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None) -> Iterator[None]:
        wait = self.timeout if timeout is None else timeout
        entry = self._checkout(key)
        try:
            if not entry.lock.acquire(timeout=wait):
                logger.warning("lock_acquire_timeout", extra={"key": key, "timeout": wait})
                raise SlotBusyError(
                    "Resource is busy, try again",
                    code="resource_busy",
                    details={"key": key},
                )
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(key, entry)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


# Shared by every request handled in this process.
resource_locks = KeyedLock()
