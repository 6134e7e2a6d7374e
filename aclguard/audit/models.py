"""Audit data models.

Audit events carried to the sink, and the hash-chained records they are
stored as.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from aclguard.authz.models import AuthorizationDecision


class AuditEvent(BaseModel):
    """One authorization decision as seen by an audit sink."""

    model_config = ConfigDict(frozen=True)

    decision_id: str = Field(description="Id of the decision this event records")
    principal_id: str | None = Field(description="Who asked (None when unauthenticated)")
    operation: str = Field(description="Operation that was decided")
    resource_type: str | None = Field(default=None, description="Type of resource")
    resource_id: str | None = Field(default=None, description="Id of resource")
    required_mask: int | None = Field(default=None, description="ACL mask checked")
    granted: bool
    reason_code: str
    timestamp_utc: datetime

    @classmethod
    def from_decision(cls, decision: AuthorizationDecision) -> "AuditEvent":
        return cls(
            decision_id=decision.decision_id,
            principal_id=decision.principal_id,
            operation=decision.operation,
            resource_type=decision.resource_type,
            resource_id=decision.resource_id,
            required_mask=decision.required_mask,
            granted=decision.granted,
            reason_code=decision.reason.value,
            timestamp_utc=decision.timestamp,
        )


class AuditRecord(BaseModel):
    """Tamper-evident audit record with hash chaining.

    Chain integrity:
    - Each record's `record_hash` is computed from its contents + `previous_hash`
    - `previous_hash` links to the prior record in the chain
    - Genesis record has empty `previous_hash`
    """

    record_id: str = Field(
        default_factory=lambda: str(uuid4()),
        description="Unique identifier for this record",
    )
    sequence_number: int = Field(description="Monotonically increasing sequence within stream")
    stream: str = Field(description="Chain this record belongs to")
    recorded_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the record was appended",
    )
    event: AuditEvent
    previous_hash: str = Field(default="", description="Hash of previous record (empty for genesis)")
    record_hash: str = Field(default="", description="Computed hash of this record")

    def to_hash_content(self) -> dict[str, Any]:
        """Get the content used for hash computation.

        Excludes `record_hash` as that's what we're computing.
        """
        return {
            "record_id": self.record_id,
            "sequence_number": self.sequence_number,
            "stream": self.stream,
            "recorded_at": self.recorded_at.isoformat(),
            "event": self.event.model_dump(mode="json"),
            "previous_hash": self.previous_hash,
        }


class AuditChainStatus(BaseModel):
    """Status of an audit chain."""

    stream: str
    total_records: int
    last_record_id: str | None
    last_sequence: int
    last_timestamp: datetime | None
    chain_valid: bool
    last_verified_at: datetime | None
    error_message: str | None = None
