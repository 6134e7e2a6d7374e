"""Policy evaluator.

The single entry point for an authorization decision.

Evaluation order (short-circuits on the first conclusive step):
1. No principal: publish and raise AuthenticationRequired
2. Unknown operation: deny (fail closed)
3. Admin authority on a bypassable rule: grant
4. Static authority requirement not met: deny
5. No predicate or ACL path configured: grant on authorities alone
6. Any alternative predicate true: grant
7. ACL check on the resource instance: grant or deny
8. Otherwise: deny

Every decision is published to the event bus before it is returned.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Iterable, TypeVar

from aclguard.acl.models import ResourceIdentity, Sid
from aclguard.acl.permissions import PermissionMask, parse_mask
from aclguard.acl.store import AclStore
from aclguard.audit.bus import AuthorizationEventBus
from aclguard.auth.models import Principal
from aclguard.authz.models import (
    AuthorityMatch,
    AuthorizationContext,
    AuthorizationDecision,
    OperationRule,
    ReasonCode,
)
from aclguard.authz.predicates import PredicateRegistry
from aclguard.config import Settings, get_settings
from aclguard.errors import (
    AccessDenied,
    AuthenticationRequired,
    ResourceNotFound,
    StorageUnavailable,
    UnknownPermissionName,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PolicyEvaluator:
    """Combines authorities, business predicates and ACLs into one decision.

    Usage:
        evaluator = PolicyEvaluator(store, bus)
        evaluator.add_rule(OperationRule(
            name="document.read",
            required_authorities=["ROLE_USER"],
            alternatives=["is_owner"],
            acl_permission=PermissionMask.READ,
        ))

        decision = evaluator.decide(principal, "document.read", doc)
    """

    def __init__(
        self,
        store: AclStore,
        bus: AuthorizationEventBus,
        predicates: PredicateRegistry | None = None,
        settings: Settings | None = None,
        rules: Iterable[OperationRule] | None = None,
    ):
        self.store = store
        self.bus = bus
        self.predicates = predicates or PredicateRegistry()
        self.settings = settings or get_settings()
        self._rules: dict[str, OperationRule] = {}
        self._rules_lock = threading.Lock()
        for rule in rules or ():
            self.add_rule(rule)

    # =========================================================================
    # Rules
    # =========================================================================

    def add_rule(self, rule: OperationRule) -> None:
        """Add or replace an operation rule.

        Raises:
            PolicyConfigurationError: If the rule references an unknown predicate
        """
        for name in rule.alternatives:
            self.predicates.get(name)
        with self._rules_lock:
            rules = dict(self._rules)
            rules[rule.name] = rule
            self._rules = rules
        logger.debug("Added operation rule: %s", rule.name)

    def get_rule(self, operation: str) -> OperationRule | None:
        return self._rules.get(operation)

    @property
    def rules(self) -> dict[str, OperationRule]:
        return dict(self._rules)

    # =========================================================================
    # Decisions
    # =========================================================================

    def _publish(
        self,
        principal: Principal | None,
        operation: str,
        granted: bool,
        reason: ReasonCode,
        resource: ResourceIdentity | None = None,
        required_mask: int | None = None,
    ) -> AuthorizationDecision:
        decision = AuthorizationDecision(
            granted=granted,
            reason=reason,
            principal_id=principal.principal_id if principal else None,
            operation=operation,
            resource=resource,
            required_mask=required_mask,
        )
        logger.debug("Decision %s: %s", decision.decision_id, decision.describe())
        self.bus.publish(decision)
        return decision

    def require_principal(
        self, principal: Principal | None, operation: str, resource: ResourceIdentity | None
    ) -> Principal:
        if principal is None:
            self._publish(
                None, operation, False, ReasonCode.AUTHENTICATION_REQUIRED, resource
            )
            raise AuthenticationRequired()
        return principal

    def _is_admin(self, principal: Principal) -> bool:
        return principal.has_authority(self.settings.admin_authority)

    def _context(
        self,
        operation: str,
        resource: ResourceIdentity | None,
        target: Any,
        attributes: dict[str, Any] | None,
    ) -> AuthorizationContext:
        def owner_lookup() -> Sid | None:
            try:
                return self.store.read_acl(resource).identity.owner
            except ResourceNotFound:
                return None

        return AuthorizationContext(
            operation=operation,
            resource=resource,
            target=target,
            attributes=attributes or {},
            owner_lookup=owner_lookup if resource is not None else None,
        )

    def _authorities_ok(self, principal: Principal, rule: OperationRule) -> bool:
        if not rule.required_authorities:
            return True
        if rule.authority_match == AuthorityMatch.ANY:
            return principal.has_any_authority(rule.required_authorities)
        return principal.has_all_authorities(rule.required_authorities)

    def decide(
        self,
        principal: Principal | None,
        operation: str,
        resource: ResourceIdentity | None = None,
        target: Any = None,
        attributes: dict[str, Any] | None = None,
    ) -> AuthorizationDecision:
        """Decide whether ``principal`` may perform ``operation``.

        Args:
            principal: Authenticated caller (None if unauthenticated)
            operation: Operation name with a registered rule
            resource: Target instance for instance-scoped checks
            target: Domain object for predicates (e.g. the loaded document)
            attributes: Extra request attributes for predicates

        Returns:
            AuthorizationDecision; a deny is a normal return value

        Raises:
            AuthenticationRequired: If ``principal`` is None
        """
        principal = self.require_principal(principal, operation, resource)

        rule = self._rules.get(operation)
        if rule is None:
            logger.warning("No rule for operation %s; denying", operation)
            return self._publish(principal, operation, False, ReasonCode.NO_RULE, resource)

        required_mask = rule.acl_permission or None

        def publish(granted: bool, reason: ReasonCode) -> AuthorizationDecision:
            return self._publish(
                principal, operation, granted, reason, resource, required_mask
            )

        if rule.admin_bypass and self._is_admin(principal):
            return publish(True, ReasonCode.ADMIN_BYPASS)

        if not self._authorities_ok(principal, rule):
            return publish(False, ReasonCode.AUTHORITY_MISSING)

        if rule.is_open:
            return publish(True, ReasonCode.ROLE_GRANTED)

        if rule.alternatives:
            context = self._context(operation, resource, target, attributes)
            try:
                for name in rule.alternatives:
                    if self.predicates.evaluate(name, principal, context):
                        return publish(True, ReasonCode.PREDICATE_GRANTED)
            except StorageUnavailable as exc:
                logger.error(
                    "ACL storage unavailable evaluating predicates for %s: %s", operation, exc
                )
                return publish(False, ReasonCode.STORAGE_UNAVAILABLE)

        if rule.acl_permission and resource is not None:
            try:
                result = self.store.check(resource, principal, rule.acl_permission)
            except ResourceNotFound:
                return publish(False, ReasonCode.RESOURCE_NOT_FOUND)
            except StorageUnavailable as exc:
                logger.error(
                    "ACL storage unavailable deciding %s on %s: %s",
                    operation, resource.key, exc,
                )
                return publish(False, ReasonCode.STORAGE_UNAVAILABLE)
            return publish(
                result.granted,
                ReasonCode.ACL_GRANTED if result.granted else ReasonCode.ACL_DENIED,
            )

        return publish(False, ReasonCode.NO_MATCHING_PATH)

    def has_permission(
        self,
        principal: Principal | None,
        resource: ResourceIdentity,
        permission: Any,
    ) -> AuthorizationDecision:
        """ACL-only check of ``permission`` (mask or names) on ``resource``.

        An unknown permission name is a deny, not an error.
        """
        operation = "acl.check"
        principal = self.require_principal(principal, operation, resource)

        try:
            mask = int(parse_mask(permission))
        except UnknownPermissionName as exc:
            logger.warning("Unknown permission in check: %s", exc.name)
            return self._publish(
                principal, operation, False, ReasonCode.UNKNOWN_PERMISSION, resource
            )

        def publish(granted: bool, reason: ReasonCode) -> AuthorizationDecision:
            return self._publish(principal, operation, granted, reason, resource, mask)

        if not mask:
            return publish(False, ReasonCode.UNKNOWN_PERMISSION)

        try:
            result = self.store.check(resource, principal, mask)
        except ResourceNotFound:
            return publish(False, ReasonCode.RESOURCE_NOT_FOUND)
        except StorageUnavailable as exc:
            logger.error("ACL storage unavailable checking %s: %s", resource.key, exc)
            return publish(False, ReasonCode.STORAGE_UNAVAILABLE)
        return publish(
            result.granted,
            ReasonCode.ACL_GRANTED if result.granted else ReasonCode.ACL_DENIED,
        )

    # =========================================================================
    # ACL administration
    # =========================================================================

    def _require_administrator(
        self, actor: Principal | None, resource: ResourceIdentity, operation: str
    ) -> Principal:
        """Allow ACL changes by the administering authority or ADMIN holders.

        Raises:
            AccessDenied: With the reason code only
            ResourceNotFound: If the resource has no ACL
            StorageUnavailable: If the ACL cannot be read
        """
        actor = self.require_principal(actor, operation, resource)
        if actor.has_authority(self.settings.administering_authority):
            self._publish(actor, operation, True, ReasonCode.ADMIN_BYPASS, resource)
            return actor

        decision = self.has_permission(actor, resource, PermissionMask.ADMIN)
        if decision.reason == ReasonCode.STORAGE_UNAVAILABLE:
            raise StorageUnavailable()
        if decision.reason == ReasonCode.RESOURCE_NOT_FOUND:
            raise ResourceNotFound(resource.key)
        if not decision.granted:
            raise AccessDenied(decision.reason.value)
        return actor

    def grant_permission(
        self,
        actor: Principal | None,
        resource: ResourceIdentity,
        grantee: Sid | str,
        mask: Any,
    ) -> None:
        """Grant ``mask`` on ``resource`` to ``grantee``.

        Raises:
            AccessDenied: If the actor may not administer the resource
        """
        actor = self._require_administrator(actor, resource, "acl.grant")
        entry = self.store.grant(resource, grantee, mask)
        logger.info(
            "Principal %s granted %s on %s", actor.principal_id, entry.describe(), resource.key
        )

    def revoke_permission(
        self,
        actor: Principal | None,
        resource: ResourceIdentity,
        grantee: Sid | str,
    ) -> int:
        """Remove every entry for ``grantee`` on ``resource``.

        Returns:
            Number of entries removed (0 when there was nothing to revoke)

        Raises:
            AccessDenied: If the actor may not administer the resource
        """
        actor = self._require_administrator(actor, resource, "acl.revoke")
        removed = self.store.revoke(resource, grantee)
        logger.info(
            "Principal %s revoked %d entr(ies) for %s on %s",
            actor.principal_id, removed, grantee, resource.key,
        )
        return removed

    # =========================================================================
    # Filtering
    # =========================================================================

    def filter_collection(
        self,
        principal: Principal | None,
        operation: str,
        items: Iterable[T],
        resource_of: Callable[[T], ResourceIdentity | None] | None = None,
    ) -> list[T]:
        """Keep the items ``principal`` may perform ``operation`` on, in order.

        Each item is passed to predicates as the target; ``resource_of``
        maps it to its ACL resource identity.

        Raises:
            StorageUnavailable: If any decision could not read ACL storage
        """
        principal = self.require_principal(principal, operation, None)
        kept = []
        for item in items:
            resource = resource_of(item) if resource_of else None
            decision = self.decide(principal, operation, resource, target=item)
            if decision.reason == ReasonCode.STORAGE_UNAVAILABLE:
                raise StorageUnavailable()
            if decision.granted:
                kept.append(item)
        return kept
