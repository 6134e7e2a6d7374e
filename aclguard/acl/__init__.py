"""Access Control Lists.

Per-instance permissions with inheritance along a resource tree, a bounded
permission cache, and pluggable persistence.

Usage:
    from aclguard.acl import AclStore, InMemoryAclStorage, PermissionMask

    store = AclStore(InMemoryAclStorage())
    store.create_acl(folder, owner="alice")
    store.create_acl(doc, owner="alice", parent=folder)
    store.grant(folder, "bob", PermissionMask.READ)

    store.has_permission(doc, bob, PermissionMask.READ)  # inherited
"""

from aclguard.acl.cache import CacheStats, PermissionCache
from aclguard.acl.models import (
    Acl,
    AclCheckResult,
    AclEntry,
    AclObjectIdentity,
    ResourceIdentity,
    Sid,
)
from aclguard.acl.permissions import PermissionMask, parse_mask
from aclguard.acl.storage import (
    AclStorage,
    FileAclStorage,
    InMemoryAclStorage,
    SqlAclStorage,
    get_acl_storage,
)
from aclguard.acl.store import AclStore, OrphanPolicy

__all__ = [
    "Acl",
    "AclCheckResult",
    "AclEntry",
    "AclObjectIdentity",
    "AclStorage",
    "AclStore",
    "CacheStats",
    "FileAclStorage",
    "InMemoryAclStorage",
    "OrphanPolicy",
    "PermissionCache",
    "PermissionMask",
    "ResourceIdentity",
    "Sid",
    "SqlAclStorage",
    "get_acl_storage",
    "parse_mask",
]
