"""ACL store.

Authoritative source of ACL entries and object identities, and resolver of
effective permissions through the inheritance tree.

Resolution rule: required bits are decided one at a time. Entries are
scanned in insertion order, own entries first, then the parent's effective
ACL while ``entries_inheriting`` holds. The first entry whose SID belongs to
the caller and whose mask covers a still-undecided bit decides that bit. A
denying entry fails the whole check. Bits left undecided when the chain is
exhausted are denied.

Who may call ``grant``/``revoke`` is decided by the policy evaluator before
delegating here; the store itself does not check callers.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Iterator, TypeVar

from aclguard.acl.cache import PermissionCache
from aclguard.acl.models import (
    Acl,
    AclCheckResult,
    AclEntry,
    AclObjectIdentity,
    ResourceIdentity,
    Sid,
)
from aclguard.acl.permissions import PermissionMask, parse_mask
from aclguard.acl.storage import AclStorage
from aclguard.auth.models import Principal
from aclguard.errors import (
    AclHasChildren,
    AuthorizationError,
    InvalidAclHierarchy,
    ResourceAlreadyExists,
    ResourceNotFound,
    StorageUnavailable,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OrphanPolicy(str, Enum):
    """What happens to child ACLs when their parent ACL is deleted."""

    REPARENT = "reparent"  # attach to grandparent, materialise inherited entries
    CASCADE = "cascade"  # delete the whole subtree
    FORBID = "forbid"  # refuse while children exist


def _coerce_sid(sid: Sid | str) -> Sid:
    return sid if isinstance(sid, Sid) else Sid.principal(sid)


class AclStore:
    """Stores ACLs and resolves effective permissions.

    Usage:
        store = AclStore(InMemoryAclStorage(), cache=PermissionCache(1000))
        store.create_acl(doc, owner="alice")
        store.grant(doc, "bob", PermissionMask.READ)

        store.has_permission(doc, bob, PermissionMask.READ)  # True
    """

    def __init__(
        self,
        storage: AclStorage,
        cache: PermissionCache | None = None,
        orphan_policy: OrphanPolicy | str = OrphanPolicy.REPARENT,
    ):
        self.storage = storage
        self.cache = cache
        self.orphan_policy = OrphanPolicy(orphan_policy)

        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        # Held by operations that touch more than one node
        self._structure_lock = threading.RLock()

    # =========================================================================
    # Internals
    # =========================================================================

    @contextmanager
    def _node_lock(self, resource: ResourceIdentity) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(resource.key, threading.Lock())
        with lock:
            yield

    def _storage_call(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        """Run a storage call, reporting any backend failure as StorageUnavailable."""
        try:
            return func(*args)
        except AuthorizationError:
            raise
        except Exception as exc:
            logger.error("ACL storage %s failed: %s", operation, exc)
            raise StorageUnavailable(f"ACL storage {operation} failed") from exc

    def _load(self, resource: ResourceIdentity) -> Acl | None:
        return self._storage_call("load", self.storage.load, resource)

    def _require(self, resource: ResourceIdentity) -> Acl:
        acl = self._load(resource)
        if acl is None:
            raise ResourceNotFound(resource.key)
        return acl

    def _save(self, acl: Acl) -> None:
        self._storage_call("save", self.storage.save, acl)
        self._invalidate(acl.resource)

    def _invalidate(self, resource: ResourceIdentity) -> None:
        if self.cache is not None:
            self.cache.invalidate(resource)

    def _generation(self, resource: ResourceIdentity) -> int:
        return self.cache.generation(resource.key) if self.cache is not None else 0

    # =========================================================================
    # Object identities
    # =========================================================================

    def exists(self, resource: ResourceIdentity) -> bool:
        return self._load(resource) is not None

    def read_acl(self, resource: ResourceIdentity) -> Acl:
        """Get the ACL for a resource.

        Raises:
            ResourceNotFound: If the resource has no ACL
        """
        return self._require(resource)

    def children(self, resource: ResourceIdentity) -> list[ResourceIdentity]:
        return self._storage_call("children", self.storage.children, resource)

    def create_acl(
        self,
        resource: ResourceIdentity,
        owner: Sid | str,
        parent: ResourceIdentity | None = None,
        entries_inheriting: bool = True,
        owner_mask: int = PermissionMask.FULL,
    ) -> Acl:
        """Create the object identity and the owner's entry in one save.

        Raises:
            ResourceAlreadyExists: If the resource already has an ACL
            ResourceNotFound: If ``parent`` has no ACL
        """
        owner_sid = _coerce_sid(owner)
        with self._structure_lock, self._node_lock(resource):
            if self._load(resource) is not None:
                raise ResourceAlreadyExists(resource.key)
            if parent is not None:
                self._require(parent)

            entries: tuple[AclEntry, ...] = ()
            if owner_mask:
                entries = (
                    AclEntry(resource=resource, sid=owner_sid, mask=owner_mask, granting=True),
                )
            acl = Acl(
                identity=AclObjectIdentity(
                    resource=resource,
                    parent=parent,
                    owner=owner_sid,
                    entries_inheriting=entries_inheriting,
                ),
                entries=entries,
            )
            self._save(acl)

        logger.info(
            "Created ACL %s owner=%s parent=%s",
            resource.key, owner_sid, parent.key if parent else None,
        )
        return acl

    def set_parent(
        self, resource: ResourceIdentity, parent: ResourceIdentity | None
    ) -> Acl:
        """Move a node under a new parent (or make it a root).

        Raises:
            InvalidAclHierarchy: If the move would create a cycle
        """
        with self._structure_lock:
            if parent is not None:
                ancestor: ResourceIdentity | None = parent
                while ancestor is not None:
                    if ancestor.key == resource.key:
                        raise InvalidAclHierarchy(
                            f"{parent.key} is {resource.key} or one of its descendants"
                        )
                    ancestor = self._require(ancestor).parent

            with self._node_lock(resource):
                acl = self._require(resource).with_identity(parent=parent)
                self._save(acl)

        logger.info(
            "Reparented ACL %s under %s", resource.key, parent.key if parent else None
        )
        return acl

    def set_entries_inheriting(self, resource: ResourceIdentity, inheriting: bool) -> Acl:
        with self._node_lock(resource):
            acl = self._require(resource).with_identity(entries_inheriting=inheriting)
            self._save(acl)
        logger.info("ACL %s entries_inheriting=%s", resource.key, inheriting)
        return acl

    def change_owner(self, resource: ResourceIdentity, owner: Sid | str) -> Acl:
        """Change the recorded owner. Existing entries are left untouched."""
        owner_sid = _coerce_sid(owner)
        with self._node_lock(resource):
            acl = self._require(resource).with_identity(owner=owner_sid)
            self._save(acl)
        logger.info("ACL %s owner changed to %s", resource.key, owner_sid)
        return acl

    def delete_acl(
        self,
        resource: ResourceIdentity,
        orphan_policy: OrphanPolicy | str | None = None,
    ) -> list[str]:
        """Delete a resource's ACL and deal with its children.

        Under REPARENT each child moves to the deleted node's parent and, if
        it inherited, receives a copy of the deleted node's own entries
        after its own, so its effective ACL is unchanged.

        Returns:
            Keys of every ACL that was deleted

        Raises:
            ResourceNotFound: If the resource has no ACL
            AclHasChildren: Under FORBID when children exist
        """
        policy = OrphanPolicy(orphan_policy) if orphan_policy else self.orphan_policy

        with self._structure_lock:
            with self._node_lock(resource):
                acl = self._require(resource)
                children = self.children(resource)

                if children and policy == OrphanPolicy.FORBID:
                    raise AclHasChildren(resource.key, len(children))

                deleted: list[str] = []
                if policy == OrphanPolicy.CASCADE:
                    for child in children:
                        deleted.extend(self.delete_acl(child, OrphanPolicy.CASCADE))
                else:
                    for child in children:
                        self._reparent_orphan(child, acl)

                self._storage_call("delete", self.storage.delete, resource)
                if self.cache is not None:
                    self.cache.forget(resource)
                deleted.append(resource.key)

            with self._locks_guard:
                self._locks.pop(resource.key, None)

        logger.info(
            "Deleted ACL %s (policy=%s, removed=%d, children=%d)",
            resource.key, policy.value, len(deleted), len(children),
        )
        return deleted

    def _reparent_orphan(self, child: ResourceIdentity, removed: Acl) -> None:
        with self._node_lock(child):
            child_acl = self._require(child)
            entries = list(child_acl.entries)
            inheriting = child_acl.identity.entries_inheriting
            if inheriting:
                for entry in removed.entries:
                    copied = AclEntry(
                        resource=child,
                        sid=entry.sid,
                        mask=entry.mask,
                        granting=entry.granting,
                    )
                    # An identical earlier entry already decides these bits
                    if not any(existing.same_rule(copied) for existing in entries):
                        entries.append(copied)
                inheriting = removed.identity.entries_inheriting
            updated = child_acl.with_entries(entries).with_identity(
                parent=removed.parent if inheriting else None,
                entries_inheriting=inheriting,
            )
            self._save(updated)
        logger.debug("Reparented orphan %s after deleting %s", child.key, removed.resource.key)

    # =========================================================================
    # Entries
    # =========================================================================

    def _append_entry(
        self, resource: ResourceIdentity, sid: Sid | str, mask: Any, granting: bool
    ) -> AclEntry:
        parsed = parse_mask(mask)
        if not parsed:
            raise ValueError("Permission mask must not be empty")
        new_entry = AclEntry(
            resource=resource, sid=_coerce_sid(sid), mask=parsed, granting=granting
        )

        with self._node_lock(resource):
            acl = self._require(resource)
            for entry in acl.entries:
                if entry.same_rule(new_entry):
                    return entry
            self._save(acl.with_entries(acl.entries + (new_entry,)))

        logger.info("ACL %s: %s", resource.key, new_entry.describe())
        return new_entry

    def grant(self, resource: ResourceIdentity, sid: Sid | str, mask: Any) -> AclEntry:
        """Append a granting entry. Repeating an identical grant is a no-op."""
        return self._append_entry(resource, sid, mask, granting=True)

    def deny(self, resource: ResourceIdentity, sid: Sid | str, mask: Any) -> AclEntry:
        """Append a denying entry. Repeating an identical deny is a no-op."""
        return self._append_entry(resource, sid, mask, granting=False)

    def revoke(self, resource: ResourceIdentity, sid: Sid | str) -> int:
        """Remove every entry for ``sid`` on ``resource``.

        Returns:
            Number of entries removed (0 if there were none)
        """
        target = _coerce_sid(sid)
        with self._node_lock(resource):
            acl = self._require(resource)
            kept = [entry for entry in acl.entries if entry.sid != target]
            removed = len(acl.entries) - len(kept)
            if removed:
                self._save(acl.with_entries(kept))

        if removed:
            logger.info("ACL %s: revoked %d entr(ies) for %s", resource.key, removed, target)
        return removed

    def effective_entries(self, resource: ResourceIdentity) -> list[AclEntry]:
        """Own entries followed by inherited ones, in evaluation order."""
        entries: list[AclEntry] = []
        for acl in self._walk(resource):
            entries.extend(acl.entries)
        return entries

    def _walk(self, resource: ResourceIdentity) -> Iterator[Acl]:
        current: ResourceIdentity | None = resource
        visited: set[str] = set()
        while current is not None and current.key not in visited:
            visited.add(current.key)
            acl = self._load(current)
            if acl is None:
                if current.key == resource.key:
                    raise ResourceNotFound(resource.key)
                return
            yield acl
            if not acl.identity.entries_inheriting:
                return
            current = acl.parent

    # =========================================================================
    # Resolution
    # =========================================================================

    def check(
        self, resource: ResourceIdentity, principal: Principal, required: Any
    ) -> AclCheckResult:
        """Resolve whether ``principal`` holds ``required`` on ``resource``.

        Raises:
            ResourceNotFound: If the resource has no ACL
            StorageUnavailable: If the backing store fails
        """
        required_mask = int(parse_mask(required))
        if not required_mask:
            raise ValueError("Required mask must not be empty")

        if self.cache is not None:
            cached = self.cache.get(resource, principal, required_mask)
            if cached is not None:
                return AclCheckResult(granted=cached, required=required_mask, cached=True)

        result, stamp = self._resolve(resource, principal, required_mask)

        if self.cache is not None:
            self.cache.put(resource, principal, required_mask, result.granted, stamp)
        return result

    def has_permission(
        self, resource: ResourceIdentity, principal: Principal, required: Any
    ) -> bool:
        return self.check(resource, principal, required).granted

    def _resolve(
        self, resource: ResourceIdentity, principal: Principal, required: int
    ) -> tuple[AclCheckResult, list[tuple[str, int]]]:
        sids = principal.sids()
        undecided = required
        matched: list[AclEntry] = []
        chain: list[str] = []
        stamp: list[tuple[str, int]] = []
        visited: set[str] = set()

        def result(granted: bool) -> tuple[AclCheckResult, list[tuple[str, int]]]:
            return (
                AclCheckResult(
                    granted=granted, required=required, matched_entries=matched, chain=chain
                ),
                stamp,
            )

        current: ResourceIdentity | None = resource
        while current is not None:
            if current.key in visited:
                logger.error("ACL cycle detected at %s while resolving %s", current.key, resource.key)
                break
            visited.add(current.key)

            # Generation is read before the node so a concurrent mutation marks us stale
            stamp.append((current.key, self._generation(current)))
            acl = self._load(current)
            if acl is None:
                if current.key == resource.key:
                    raise ResourceNotFound(resource.key)
                logger.warning("Parent ACL %s of %s is missing", current.key, resource.key)
                break
            chain.append(current.key)

            for entry in acl.entries:
                if entry.sid not in sids or not (entry.mask & undecided):
                    continue
                matched.append(entry)
                if not entry.granting:
                    return result(False)
                undecided &= ~entry.mask
                if not undecided:
                    return result(True)

            if not acl.identity.entries_inheriting:
                break
            current = acl.parent

        return result(False)
