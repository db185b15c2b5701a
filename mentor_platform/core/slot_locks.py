from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterable, Iterator


logger = logging.getLogger(__name__)

_REGISTRY_LOCK = threading.Lock()
_SLOT_LOCKS: dict[int, threading.Lock] = {}


def _lock_for(slot_id: int) -> threading.Lock:
    with _REGISTRY_LOCK:
        lock = _SLOT_LOCKS.get(slot_id)
        if lock is None:
            lock = threading.Lock()
            _SLOT_LOCKS[slot_id] = lock
        return lock


@contextmanager
def slot_locks(slot_ids: Iterable[int]) -> Iterator[None]:
    """Serialize check-then-act sections per slot inside this process.

    Locks are taken in ascending id order so two callers touching the same
    pair of slots cannot deadlock. Cross-process safety comes from the row
    lock and the partial unique indexes on session_bookings.
    """
    ordered = sorted({int(slot_id) for slot_id in slot_ids if slot_id})
    acquired: list[threading.Lock] = []
    try:
        for slot_id in ordered:
            lock = _lock_for(slot_id)
            lock.acquire()
            acquired.append(lock)
        logger.debug('slot_locks_acquired slot_ids=%s', ordered)
        yield
    finally:
        for lock in reversed(acquired):
            lock.release()


def slot_lock(slot_id: int):
    return slot_locks([slot_id])
