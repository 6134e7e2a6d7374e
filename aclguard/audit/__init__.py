"""Authorization audit.

Every decision is published on the event bus. Standard listeners log it,
count it, watch for repeated denials and append it to a tamper-evident
hash-chained trail.

Usage:
    from aclguard.audit import AuditChain, AuditTrailListener, InMemoryAuditStorage

    chain = AuditChain(InMemoryAuditStorage())
    bus.subscribe(AuditTrailListener(chain))

    # Verify chain integrity
    valid, error = chain.verify_chain()
"""

from aclguard.audit.bus import AuthorizationEventBus, Subscription
from aclguard.audit.chain import AuditChain
from aclguard.audit.listeners import (
    AuditTrailListener,
    DecisionMetrics,
    DenialAlert,
    DenialMonitor,
    LoggingAuditListener,
)
from aclguard.audit.models import AuditChainStatus, AuditEvent, AuditRecord
from aclguard.audit.storage import (
    AuditStorage,
    FileAuditStorage,
    InMemoryAuditStorage,
    get_audit_storage,
)

__all__ = [
    "AuditChain",
    "AuditChainStatus",
    "AuditEvent",
    "AuditRecord",
    "AuditStorage",
    "AuditTrailListener",
    "AuthorizationEventBus",
    "DecisionMetrics",
    "DenialAlert",
    "DenialMonitor",
    "FileAuditStorage",
    "InMemoryAuditStorage",
    "LoggingAuditListener",
    "Subscription",
    "get_audit_storage",
]
