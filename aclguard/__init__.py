"""aclguard: authorization decision engine.

Combines role/authority checks, typed business predicates and per-instance
Access Control Lists with permission inheritance, and publishes every
decision to an audit event bus.

Usage:
    from aclguard import get_engine, Principal, ResourceIdentity

    engine = get_engine()
    doc = ResourceIdentity(type="Document", id=42)
    engine.create_resource(Principal(principal_id="alice"), doc)

    decision = engine.decide(principal, "document.read", doc)
    if decision.granted:
        ...
"""

from aclguard.acl.models import ResourceIdentity, Sid
from aclguard.acl.permissions import PermissionMask
from aclguard.auth.models import Principal
from aclguard.authz.engine import AuthorizationEngine, build_engine, get_engine
from aclguard.authz.models import AuthorizationDecision, ReasonCode

__version__ = "0.1.0"

__all__ = [
    "AuthorizationDecision",
    "AuthorizationEngine",
    "PermissionMask",
    "Principal",
    "ReasonCode",
    "ResourceIdentity",
    "Sid",
    "build_engine",
    "get_engine",
]
