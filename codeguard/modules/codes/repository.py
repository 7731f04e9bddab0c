"""
In-process store of access code records.

Records are mutated in place under their per-code lock
(`repository.lock(code_id)`). The index itself has one short-held lock for
add/remove/snapshot.
"""

import threading
from typing import Dict, List, Optional

from codeguard.core.locks import KeyedLocks
from codeguard.core.security import constant_time_equals
from codeguard.models.access_code import AccessCode


class CodeRepository:
    def __init__(self, shards: int = 64):
        self._codes: Dict[str, AccessCode] = {}
        self._index_lock = threading.Lock()
        self._locks = KeyedLocks(shards)

    def lock(self, code_id: str):
        return self._locks.lock_for(code_id)

    def add(self, record: AccessCode):
        with self._index_lock:
            if record.code_id in self._codes:
                raise ValueError(f"Duplicate code_id: {record.code_id}")
            self._codes[record.code_id] = record

    def get(self, code_id: str) -> Optional[AccessCode]:
        return self._codes.get(code_id)

    def remove(self, code_id: str) -> Optional[AccessCode]:
        with self._index_lock:
            return self._codes.pop(code_id, None)

    def snapshot(self) -> List[AccessCode]:
        with self._index_lock:
            return list(self._codes.values())

    def find_by_signature(self, signature: str, institution_id: Optional[str] = None) -> List[AccessCode]:
        """
        Records whose HMAC signature equals `signature`.

        Every stored signature is compared in constant time, so the cost does
        not depend on where (or whether) a match is found.
        """
        matches = []
        for record in self.snapshot():
            same = constant_time_equals(record.signature, signature)
            if same and (institution_id is None or record.institution_id == institution_id):
                matches.append(record)
        return matches

    def clear(self) -> int:
        """Drop every record. Returns the number removed."""
        with self._index_lock:
            removed = len(self._codes)
            self._codes.clear()
            return removed

    def __len__(self) -> int:
        return len(self._codes)
