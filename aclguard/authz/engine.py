"""Authorization engine.

Wires ACL storage, the permission cache, the ACL store, the event bus and
its standard listeners, predicates, the policy evaluator and the method
guard into one object exposing the collaborator-facing surface.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, TypeVar

from aclguard.acl.cache import PermissionCache
from aclguard.acl.models import Acl, ResourceIdentity, Sid
from aclguard.acl.permissions import PermissionMask
from aclguard.acl.storage import AclStorage, get_acl_storage
from aclguard.acl.store import AclStore, OrphanPolicy
from aclguard.audit.bus import AuthorizationEventBus
from aclguard.audit.chain import AuditChain
from aclguard.audit.listeners import (
    AuditTrailListener,
    DecisionMetrics,
    DenialAlert,
    DenialMonitor,
    LoggingAuditListener,
)
from aclguard.audit.storage import AuditStorage, get_audit_storage
from aclguard.auth.models import Principal
from aclguard.auth.resolvers import IdentityResolver, StaticIdentityResolver
from aclguard.authz.evaluator import PolicyEvaluator
from aclguard.authz.guard import MethodGuard
from aclguard.authz.models import AuthorizationDecision, OperationRule, ReasonCode
from aclguard.authz.policy import load_policy_file
from aclguard.authz.predicates import PredicateRegistry
from aclguard.config import Settings, get_settings
from aclguard.errors import AccessDenied, ResourceNotFound, StorageUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AuthorizationEngine:
    """Authorization decision engine.

    Usage:
        engine = build_engine()
        engine.add_rule(OperationRule(
            name="document.read",
            alternatives=["is_owner"],
            acl_permission=PermissionMask.READ,
        ))

        engine.create_resource(alice, doc)
        engine.grant_permission(alice, doc, "bob", PermissionMask.READ)

        decision = engine.decide(bob, "document.read", doc)
    """

    def __init__(
        self,
        settings: Settings | None = None,
        storage: AclStorage | None = None,
        cache: PermissionCache | None = None,
        bus: AuthorizationEventBus | None = None,
        predicates: PredicateRegistry | None = None,
        rules: Iterable[OperationRule] | None = None,
        identity_resolver: IdentityResolver | None = None,
        audit_storage: AuditStorage | None = None,
        on_denial_alert: Callable[[DenialAlert], None] | None = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage if storage is not None else get_acl_storage(self.settings)
        self.cache = cache if cache is not None else PermissionCache(self.settings.cache_max_entries)
        self.store = AclStore(self.storage, self.cache, self.settings.orphan_policy)
        self.bus = bus or AuthorizationEventBus()
        self.predicates = predicates or PredicateRegistry()
        self.identity_resolver = identity_resolver or StaticIdentityResolver()

        # Standard listeners
        self.metrics = DecisionMetrics()
        self.bus.subscribe(self.metrics, name="metrics")
        self.bus.subscribe(LoggingAuditListener(), name="logging")
        self.denial_monitor = DenialMonitor(
            threshold=self.settings.denial_alert_threshold,
            window_seconds=self.settings.denial_alert_window_seconds,
            on_alert=on_denial_alert,
        )
        self.bus.subscribe(self.denial_monitor, name="denial_monitor", outcome="denied")

        self.audit_chain: AuditChain | None = None
        if self.settings.audit_enabled:
            self.audit_chain = AuditChain(audit_storage or get_audit_storage(self.settings))
            self.bus.subscribe(AuditTrailListener(self.audit_chain), name="audit_trail")

        self.evaluator = PolicyEvaluator(
            self.store, self.bus, self.predicates, self.settings, rules
        )
        self.guard = MethodGuard(self.evaluator, self.settings)

        if self.settings.policy_file:
            self.load_policy(self.settings.policy_file)

        logger.info(
            "AuthorizationEngine initialized (storage=%s, cache=%d, audit=%s, rules=%d)",
            type(self.storage).__name__,
            self.cache.max_entries,
            self.settings.audit_enabled,
            len(self.evaluator.rules),
        )

    # =========================================================================
    # Rules
    # =========================================================================

    def add_rule(self, rule: OperationRule) -> None:
        self.evaluator.add_rule(rule)

    def load_policy(self, path: str) -> None:
        """Load predicates and operation rules from a YAML file."""
        for rule in load_policy_file(path, self.predicates).values():
            self.evaluator.add_rule(rule)

    # =========================================================================
    # Decisions
    # =========================================================================

    def decide(
        self,
        principal: Principal | None,
        operation: str,
        resource: ResourceIdentity | None = None,
        target: Any = None,
        attributes: dict[str, Any] | None = None,
    ) -> AuthorizationDecision:
        return self.evaluator.decide(principal, operation, resource, target, attributes)

    def has_permission(
        self, principal: Principal | None, resource: ResourceIdentity, permission: Any
    ) -> AuthorizationDecision:
        return self.evaluator.has_permission(principal, resource, permission)

    def filter_collection(
        self,
        principal: Principal | None,
        operation: str,
        items: Iterable[T],
        resource_of: Callable[[T], ResourceIdentity | None] | None = None,
    ) -> list[T]:
        return self.evaluator.filter_collection(principal, operation, items, resource_of)

    def protect(
        self, operation: str, **options: Any
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Shortcut for ``engine.guard.protect``."""
        return self.guard.protect(operation, **options)

    # =========================================================================
    # ACL administration
    # =========================================================================

    def grant_permission(
        self,
        actor: Principal | None,
        resource: ResourceIdentity,
        grantee: Sid | str,
        mask: Any,
    ) -> None:
        self.evaluator.grant_permission(actor, resource, grantee, mask)

    def revoke_permission(
        self,
        actor: Principal | None,
        resource: ResourceIdentity,
        grantee: Sid | str,
    ) -> int:
        return self.evaluator.revoke_permission(actor, resource, grantee)

    def _require_acl_permission(
        self,
        actor: Principal | None,
        resource: ResourceIdentity,
        permission: PermissionMask,
        operation: str,
    ) -> Principal:
        actor = self.evaluator.require_principal(actor, operation, resource)
        if actor.has_authority(self.settings.admin_authority):
            return actor

        decision = self.evaluator.has_permission(actor, resource, permission)
        if decision.reason == ReasonCode.STORAGE_UNAVAILABLE:
            raise StorageUnavailable()
        if decision.reason == ReasonCode.RESOURCE_NOT_FOUND:
            raise ResourceNotFound(resource.key)
        if not decision.granted:
            raise AccessDenied(decision.reason.value)
        return actor

    def create_resource(
        self,
        owner: Principal | None,
        resource: ResourceIdentity,
        parent: ResourceIdentity | None = None,
        entries_inheriting: bool = True,
    ) -> Acl:
        """Register a new resource owned by ``owner``.

        The owner receives every permission on it. Creating under a parent
        requires CREATE on the parent.

        Raises:
            AccessDenied: If the owner may not create under ``parent``
            ResourceNotFound: If ``parent`` has no ACL
            ResourceAlreadyExists: If the resource already has an ACL
        """
        if parent is not None:
            owner = self._require_acl_permission(
                owner, parent, PermissionMask.CREATE, "resource.create"
            )
        else:
            owner = self.evaluator.require_principal(owner, "resource.create", resource)

        return self.store.create_acl(
            resource,
            owner=Sid.principal(owner.principal_id),
            parent=parent,
            entries_inheriting=entries_inheriting,
        )

    def delete_resource(
        self,
        actor: Principal | None,
        resource: ResourceIdentity,
        orphan_policy: OrphanPolicy | str | None = None,
    ) -> list[str]:
        """Delete a resource's ACL. Requires DELETE on the resource.

        Returns:
            Keys of every ACL removed

        Raises:
            AccessDenied: If the actor lacks DELETE
            ResourceNotFound: If the resource has no ACL
        """
        self._require_acl_permission(actor, resource, PermissionMask.DELETE, "resource.delete")
        return self.store.delete_acl(resource, orphan_policy)


# Singleton instance
_engine: AuthorizationEngine | None = None


def build_engine(settings: Settings | None = None, **components: Any) -> AuthorizationEngine:
    """Build an engine from settings and optional component overrides."""
    return AuthorizationEngine(settings=settings, **components)


def get_engine() -> AuthorizationEngine:
    """Get the authorization engine singleton."""
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine
