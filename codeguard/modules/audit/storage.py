"""
Day-partitioned JSONL storage for audit entries.

One JSON object per line, one file per UTC day:

    logs/audit/audit_2025-11-04.jsonl

When a cipher is configured every line is a Fernet token instead of plain
JSON. Unreadable lines (tampered, wrong key, truncated) are skipped on read
and counted in the log.
"""

import logging
import threading
from collections import defaultdict
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from cryptography.fernet import InvalidToken
from pydantic import ValidationError as PydanticValidationError

from codeguard.core.security import TokenEncryption
from codeguard.models.audit import AuditLogEntry

logger = logging.getLogger(__name__)

FILE_PREFIX = "audit_"
FILE_SUFFIX = ".jsonl"


class AuditWriteError(OSError):
    """A partition write failed; carries the entries that were not written."""

    def __init__(self, message: str, written: int, unwritten: List[AuditLogEntry]):
        super().__init__(message)
        self.written = written
        self.unwritten = unwritten


class AuditLogStorage:
    """
    Append-only audit partitions.

    Usage:
        storage = AuditLogStorage(Path("logs/audit"))
        storage.write_entries(entries)
        for entry in storage.read_entries(date(2025, 11, 4)):
            ...
    """

    def __init__(self, log_dir: Path, cipher: Optional[TokenEncryption] = None):
        self.log_dir = Path(log_dir)
        self.cipher = cipher
        self._lock = threading.Lock()

    def ensure_log_directory(self):
        self.log_dir.mkdir(parents=True, exist_ok=True)

    def partition_path(self, day: date) -> Path:
        return self.log_dir / f"{FILE_PREFIX}{day.isoformat()}{FILE_SUFFIX}"

    def write_entries(self, entries: Iterable[AuditLogEntry]) -> int:
        """
        Append entries to their day partitions.

        Partitions are written oldest first. A failure stops the write and
        reports the entries of that partition and every later one, so the
        caller can retry them without duplicating what already landed.

        Raises:
            AuditWriteError: If a partition cannot be written
        """
        by_day: Dict[date, List[AuditLogEntry]] = defaultdict(list)
        for entry in entries:
            by_day[entry.timestamp.date()].append(entry)

        days = sorted(by_day)
        written = 0
        with self._lock:
            for index, day in enumerate(days):
                lines = [self._encode(entry) for entry in by_day[day]]
                try:
                    self.ensure_log_directory()
                    with open(self.partition_path(day), "a", encoding="utf-8") as f:
                        f.write("\n".join(lines) + "\n")
                except OSError as e:
                    unwritten = [entry for later in days[index:] for entry in by_day[later]]
                    raise AuditWriteError(str(e), written=written, unwritten=unwritten) from e
                written += len(lines)
        return written

    def _encode(self, entry: AuditLogEntry) -> str:
        line = entry.to_json_line()
        if self.cipher is not None:
            line = self.cipher.encrypt(line)
        return line

    def partitions(self) -> List[Tuple[date, Path]]:
        """Existing partitions, oldest first."""
        if not self.log_dir.exists():
            return []

        found = []
        for path in self.log_dir.glob(f"{FILE_PREFIX}*{FILE_SUFFIX}"):
            stamp = path.name[len(FILE_PREFIX):-len(FILE_SUFFIX)]
            try:
                found.append((date.fromisoformat(stamp), path))
            except ValueError:
                continue
        return sorted(found)

    def read_entries(self, day: date) -> Iterator[AuditLogEntry]:
        """Entries stored for `day`, in write order."""
        path = self.partition_path(day)
        if not path.exists():
            return

        skipped = 0
        with open(path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    if self.cipher is not None:
                        line = self.cipher.decrypt(line)
                    yield AuditLogEntry.model_validate_json(line)
                except (InvalidToken, PydanticValidationError, ValueError):
                    skipped += 1

        if skipped:
            logger.warning(
                f"Skipped {skipped} unreadable audit lines",
                extra={"partition": path.name, "skipped": skipped}
            )

    def cleanup(self, now: datetime, retention_days: int) -> int:
        """
        Delete partitions older than the retention window.

        Returns:
            Number of partitions deleted
        """
        cutoff = (now - timedelta(days=retention_days)).date()
        deleted = 0
        with self._lock:
            for day, path in self.partitions():
                if day >= cutoff:
                    break
                try:
                    path.unlink()
                    deleted += 1
                except OSError as e:
                    logger.error(f"Failed to delete audit partition {path.name}: {e}")

        if deleted:
            logger.info(f"Deleted {deleted} expired audit partitions", extra={"cutoff": cutoff.isoformat()})
        return deleted
