"""
Per-key locking for mutable keyed tables.

A fixed pool of re-entrant locks is shared out by key hash, so memory stays
bounded no matter how many keys are seen. Two keys may share a lock; callers
that need several keys at once must take them in a fixed order.
"""

import threading
from typing import List


class KeyedLocks:
    """
    Sharded lock pool.

    Usage:
        locks = KeyedLocks()
        with locks.lock_for("CODE_ABC"):
            record.usage_count += 1
    """

    def __init__(self, shards: int = 64):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._locks: List[threading.RLock] = [threading.RLock() for _ in range(shards)]

    def lock_for(self, key: str) -> threading.RLock:
        return self._locks[hash(key) % len(self._locks)]
