"""
Storage for threat and ban records.

- ThreatStore: in-memory, bounded (oldest resolved records evicted first)
- RedisThreatStore: same interface, mirrors unresolved records into a Redis
  hash so bans survive a restart. Resolved records are removed from Redis.

Redis errors are logged and never break the request path; the in-memory
copy stays authoritative for the running process.
"""

import logging
import threading
from collections import OrderedDict
from datetime import datetime
from typing import List, Optional

from codeguard.models.rate_limit import ThreatRecord

logger = logging.getLogger(__name__)


class ThreatStore:
    """Bounded in-memory threat record store."""

    def __init__(self, capacity: int = 1000):
        self.capacity = capacity
        self._records: "OrderedDict[str, ThreatRecord]" = OrderedDict()
        self._lock = threading.Lock()

    def save(self, record: ThreatRecord):
        with self._lock:
            self._records[record.threat_id] = record
            self._records.move_to_end(record.threat_id)
            self._evict()

    def _evict(self):
        while len(self._records) > self.capacity:
            victim = next(
                (tid for tid, rec in self._records.items() if rec.resolved),
                next(iter(self._records))
            )
            del self._records[victim]

    def get(self, threat_id: str) -> Optional[ThreatRecord]:
        return self._records.get(threat_id)

    def resolve(self, threat_id: str, resolved_at: datetime) -> Optional[ThreatRecord]:
        with self._lock:
            record = self._records.get(threat_id)
            if record is None or record.resolved:
                return record
            updated = record.model_copy(update={"resolved": True, "resolved_at": resolved_at})
            self._records[threat_id] = updated
            return updated

    def all(self) -> List[ThreatRecord]:
        with self._lock:
            return list(self._records.values())

    def unresolved(self) -> List[ThreatRecord]:
        return [record for record in self.all() if not record.resolved]

    def clear(self):
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        return len(self._records)


class RedisThreatStore(ThreatStore):
    """
    ThreatStore mirrored into Redis.

    Usage:
        store = RedisThreatStore(redis.from_url(settings.REDIS_URL, decode_responses=True))
        store.load()  # restore unresolved bans after a restart
    """

    def __init__(self, redis_client, capacity: int = 1000, key: str = "codeguard:threats"):
        super().__init__(capacity=capacity)
        self.redis_client = redis_client
        self.key = key

    def save(self, record: ThreatRecord):
        super().save(record)
        if record.resolved:
            return
        try:
            self.redis_client.hset(self.key, record.threat_id, record.model_dump_json())
        except Exception as e:
            logger.error(
                f"Failed to persist threat record: {e}",
                extra={"threat_id": record.threat_id}
            )

    def resolve(self, threat_id: str, resolved_at: datetime) -> Optional[ThreatRecord]:
        record = super().resolve(threat_id, resolved_at)
        try:
            self.redis_client.hdel(self.key, threat_id)
        except Exception as e:
            logger.error(
                f"Failed to remove resolved threat record: {e}",
                extra={"threat_id": threat_id}
            )
        return record

    def clear(self):
        super().clear()
        try:
            self.redis_client.delete(self.key)
        except Exception as e:
            logger.error(f"Failed to clear threat records in Redis: {e}")

    def load(self) -> int:
        """
        Load unresolved records from Redis into memory.

        Returns:
            Number of records loaded
        """
        try:
            raw_records = self.redis_client.hvals(self.key)
        except Exception as e:
            logger.error(f"Failed to load threat records from Redis: {e}")
            return 0

        loaded = 0
        for raw in raw_records:
            if isinstance(raw, bytes):
                raw = raw.decode()
            try:
                record = ThreatRecord.model_validate_json(raw)
            except ValueError:
                logger.warning("Skipping malformed threat record in Redis")
                continue
            ThreatStore.save(self, record)
            loaded += 1

        logger.info(f"Loaded {loaded} threat records from Redis")
        return loaded
