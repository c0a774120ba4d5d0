"""
guard.py - Reentrancy Guard

A scoped mutual-exclusion lock with re-entry detection.

    with escrow_guard:
        ...  # any exit path, including exceptions, releases the lock

Two properties hold for every guarded operation:
1. Callers on different threads are serialized (the second waits for the first).
2. A call that re-enters a guard its own thread already holds is rejected with
   ReentrancyError instead of deadlocking or observing half-updated state. This
   is the path a ledger callback takes when it calls back into the same listing
   mid-transfer.
"""

from __future__ import annotations
import threading
from typing import Optional

from .core import ReentrancyError


class ReentrancyGuard:
    """Non-reentrant lock usable as a context manager."""

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        # Only ever compared against the current thread's ident, so an unlocked
        # read cannot produce a false positive.
        self._owner: Optional[int] = None

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    def held_by_current_thread(self) -> bool:
        return self._owner == threading.get_ident()

    def __enter__(self) -> 'ReentrancyGuard':
        if self.held_by_current_thread():
            raise ReentrancyError(f"Re-entrant call into {self.name}")
        self._lock.acquire()
        self._owner = threading.get_ident()
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self._owner = None
        self._lock.release()
        return False

    def __repr__(self) -> str:
        return f"ReentrancyGuard({self.name}, locked={self.locked})"
