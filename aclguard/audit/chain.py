"""Audit hash chain implementation.

Provides tamper-evident audit logging through cryptographic hash chaining.
Each record links to its predecessor, forming an immutable chain.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from datetime import datetime, timezone

from aclguard.audit.models import AuditChainStatus, AuditEvent, AuditRecord
from aclguard.audit.storage import AuditStorage

logger = logging.getLogger(__name__)


class AuditChain:
    """Manages hash-chained audit records.

    Ensures tamper-evident logging by:
    1. Computing cryptographic hash of each record
    2. Including previous record's hash in computation
    3. Storing records in append-only storage
    4. Providing chain verification

    Usage:
        chain = AuditChain(InMemoryAuditStorage())
        chain.append_event(AuditEvent.from_decision(decision))

        valid, error = chain.verify_chain()
    """

    HASH_ALGORITHM = "sha256"
    DEFAULT_STREAM = "authorization"

    def __init__(self, storage: AuditStorage, stream: str = DEFAULT_STREAM):
        """Initialize audit chain with storage backend."""
        self.storage = storage
        self.stream = stream
        # Sequence assignment and append must not interleave
        self._lock = threading.Lock()
        # Last record appended through this chain; storage is read only once
        self._latest: AuditRecord | None = None
        self._loaded = False

    def compute_record_hash(self, record: AuditRecord) -> str:
        """Compute cryptographic hash for a record.

        Uses SHA-256 on canonical JSON representation.
        Includes previous_hash to form the chain.
        """
        content = record.to_hash_content()

        # Canonical JSON serialization (sorted keys, no whitespace)
        canonical = json.dumps(content, sort_keys=True, separators=(",", ":"))

        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def append_event(self, event: AuditEvent) -> AuditRecord:
        """Create and append a new audit record.

        Returns:
            The created audit record
        """
        with self._lock:
            if not self._loaded:
                self._latest = self.storage.get_latest(self.stream)
                self._loaded = True
            previous = self._latest

            if previous:
                previous_hash = previous.record_hash
                sequence = previous.sequence_number + 1
            else:
                previous_hash = ""  # Genesis record
                sequence = 1

            record = AuditRecord(
                sequence_number=sequence,
                stream=self.stream,
                event=event,
                previous_hash=previous_hash,
            )
            record.record_hash = self.compute_record_hash(record)

            self.storage.append(record)
            self._latest = record

        logger.debug(
            "Appended audit record: stream=%s seq=%d hash=%s",
            self.stream,
            sequence,
            record.record_hash[:16] + "...",
        )
        return record

    def _link_error(
        self, record: AuditRecord, previous: AuditRecord | None
    ) -> str | None:
        """Describe why ``record`` does not extend ``previous``, or None."""
        seq = record.sequence_number
        if previous is None:
            if seq == 1 and record.previous_hash != "":
                return "Genesis record (seq=1) has non-empty previous_hash"
        elif seq != previous.sequence_number + 1:
            return f"Sequence gap: expected {previous.sequence_number + 1}, got {seq}"
        elif record.previous_hash != previous.record_hash:
            return f"Chain break at sequence {seq}: previous_hash mismatch"

        if self.compute_record_hash(record) != record.record_hash:
            return f"Hash mismatch at sequence {seq}: tampering detected"
        return None

    def verify_chain(
        self, start_sequence: int = 1, end_sequence: int | None = None
    ) -> tuple[bool, str | None]:
        """Verify integrity of the audit chain.

        Every record must hash to its stored ``record_hash``, point at its
        predecessor's hash and follow it without a sequence gap. The first
        record in range is only checked against itself (and, for the
        genesis record, an empty ``previous_hash``).

        Returns:
            (True, None) if the range is intact, else (False, description)
        """
        if end_sequence:
            records = self.storage.get_range(self.stream, start_sequence, end_sequence)
        else:
            records = [
                r for r in self.storage.get_all(self.stream)
                if r.sequence_number >= start_sequence
            ]

        previous: AuditRecord | None = None
        for record in sorted(records, key=lambda r: r.sequence_number):
            error = self._link_error(record, previous)
            if error is not None:
                logger.warning("Audit chain %s failed verification: %s", self.stream, error)
                return False, error
            previous = record

        if records:
            logger.info(
                "Chain verification passed: stream=%s records=%d", self.stream, len(records)
            )
        return True, None

    def get_status(self) -> AuditChainStatus:
        """Get current status of the audit chain."""
        count = self.storage.count(self.stream)
        latest = self.storage.get_latest(self.stream)

        # Quick verification (last 10 records)
        valid = True
        error = None
        if count > 0:
            start = max(1, (latest.sequence_number if latest else 1) - 10)
            valid, error = self.verify_chain(start_sequence=start)

        return AuditChainStatus(
            stream=self.stream,
            total_records=count,
            last_record_id=latest.record_id if latest else None,
            last_sequence=latest.sequence_number if latest else 0,
            last_timestamp=latest.recorded_at if latest else None,
            chain_valid=valid,
            last_verified_at=datetime.now(timezone.utc),
            error_message=error,
        )
