"""Audit storage backends.

Append-only storage for audit records.
"""

from __future__ import annotations

import logging
import os
import threading
from collections import deque
from itertools import islice
from pathlib import Path
from typing import Protocol

from aclguard.audit.models import AuditRecord
from aclguard.config import Settings

logger = logging.getLogger(__name__)


class AuditStorage(Protocol):
    """Protocol for audit storage backends.

    Implementations must provide append-only semantics.
    """

    def append(self, record: AuditRecord) -> None:
        """Append a record (insert only, no updates)."""
        ...

    def get_latest(self, stream: str) -> AuditRecord | None:
        """Get the most recent record of a stream."""
        ...

    def get_range(self, stream: str, start_sequence: int, end_sequence: int) -> list[AuditRecord]:
        """Get records in a sequence range."""
        ...

    def get_all(self, stream: str, limit: int = 10000) -> list[AuditRecord]:
        """Get all records of a stream (ordered by sequence)."""
        ...

    def count(self, stream: str) -> int:
        """Get total record count of a stream."""
        ...


class InMemoryAuditStorage:
    """Process-local audit storage for tests and development.

    Keeps at most ``max_records`` per stream; the oldest records are dropped
    first, so verification covers the retained window only.
    """

    def __init__(self, max_records: int = 10000):
        if max_records < 1:
            raise ValueError("max_records must be at least 1")
        self.max_records = max_records
        self._records: dict[str, deque[AuditRecord]] = {}
        self._lock = threading.Lock()

    def append(self, record: AuditRecord) -> None:
        with self._lock:
            records = self._records.get(record.stream)
            if records is None:
                records = self._records[record.stream] = deque(maxlen=self.max_records)
            records.append(record)

    def get_latest(self, stream: str) -> AuditRecord | None:
        with self._lock:
            records = self._records.get(stream)
            return records[-1] if records else None

    def get_range(self, stream: str, start_sequence: int, end_sequence: int) -> list[AuditRecord]:
        with self._lock:
            return [
                r for r in self._records.get(stream, ())
                if start_sequence <= r.sequence_number <= end_sequence
            ]

    def get_all(self, stream: str, limit: int = 10000) -> list[AuditRecord]:
        with self._lock:
            return list(islice(self._records.get(stream, ()), limit))

    def count(self, stream: str) -> int:
        """Number of retained records."""
        with self._lock:
            return len(self._records.get(stream, ()))



class FileAuditStorage:
    """File-based audit storage for development and small deployments.

    Stores records in JSONL (JSON Lines) format, one record per line.
    Each stream gets its own file.

    ``get_latest`` reads the file tail only. Range reads scan the whole
    file, which is fine for verification but not for hot paths.
    """

    TAIL_CHUNK = 4096

    def __init__(self, storage_path: str | Path):
        """Initialize file storage.

        Args:
            storage_path: Directory to store audit files
        """
        self.storage_path = Path(storage_path)
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        logger.info("FileAuditStorage initialized at %s", self.storage_path)

    def _stream_file(self, stream: str) -> Path:
        """Get the file path for a stream's audit log."""
        # Sanitize stream name to prevent path traversal
        safe_id = "".join(c for c in stream if c.isalnum() or c in "-_")
        return self.storage_path / f"audit_{safe_id}.jsonl"

    def _read(self, stream: str) -> list[AuditRecord]:
        file_path = self._stream_file(stream)
        if not file_path.exists():
            return []

        records = []
        with open(file_path, "r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    records.append(AuditRecord.model_validate_json(line))
        return records

    def append(self, record: AuditRecord) -> None:
        """Append a record to storage."""
        file_path = self._stream_file(record.stream)
        with self._lock, open(file_path, "a", encoding="utf-8") as f:
            f.write(record.model_dump_json() + "\n")

        logger.debug(
            "Appended audit record: stream=%s seq=%d",
            record.stream,
            record.sequence_number,
        )

    def get_latest(self, stream: str) -> AuditRecord | None:
        file_path = self._stream_file(stream)
        if not file_path.exists():
            return None
        line = self._last_line(file_path)
        return AuditRecord.model_validate_json(line) if line else None

    def _last_line(self, file_path: Path) -> bytes | None:
        """Read backwards in chunks until the last non-empty line is complete."""
        with open(file_path, "rb") as f:
            f.seek(0, os.SEEK_END)
            position = f.tell()
            buffer = b""
            while position > 0:
                step = min(self.TAIL_CHUNK, position)
                position -= step
                f.seek(position)
                buffer = f.read(step) + buffer
                stripped = buffer.rstrip()
                if b"\n" in stripped:
                    return stripped.rsplit(b"\n", 1)[1]
            stripped = buffer.rstrip()
            return stripped or None

    def get_range(self, stream: str, start_sequence: int, end_sequence: int) -> list[AuditRecord]:
        records = [
            r for r in self._read(stream)
            if start_sequence <= r.sequence_number <= end_sequence
        ]
        return sorted(records, key=lambda r: r.sequence_number)

    def get_all(self, stream: str, limit: int = 10000) -> list[AuditRecord]:
        records = self._read(stream)[:limit]
        return sorted(records, key=lambda r: r.sequence_number)

    def count(self, stream: str) -> int:
        file_path = self._stream_file(stream)
        if not file_path.exists():
            return 0

        count = 0
        with open(file_path, "r", encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    count += 1
        return count


def get_audit_storage(settings: Settings) -> AuditStorage:
    """Get audit storage instance based on configuration."""
    if settings.audit_storage_type == "file":
        return FileAuditStorage(settings.audit_storage_path)
    return InMemoryAuditStorage(settings.audit_memory_max_records)
