"""Shared fixtures for aclguard tests."""

from __future__ import annotations

import pytest

from aclguard.acl.cache import PermissionCache
from aclguard.acl.models import Acl, ResourceIdentity
from aclguard.acl.permissions import PermissionMask
from aclguard.acl.storage import InMemoryAclStorage
from aclguard.acl.store import AclStore
from aclguard.audit.storage import InMemoryAuditStorage
from aclguard.auth.models import Principal
from aclguard.authz.engine import AuthorizationEngine, build_engine
from aclguard.authz.models import OperationRule
from aclguard.config import Settings


class FlakyAclStorage(InMemoryAclStorage):
    """In-memory storage that can be switched into a failing state."""

    def __init__(self):
        super().__init__()
        self.failing = False

    def _check(self) -> None:
        if self.failing:
            raise ConnectionError("ACL backend down")

    def load(self, resource: ResourceIdentity) -> Acl | None:
        self._check()
        return super().load(resource)

    def save(self, acl: Acl) -> None:
        self._check()
        super().save(acl)

    def delete(self, resource: ResourceIdentity) -> None:
        self._check()
        super().delete(resource)

    def children(self, resource: ResourceIdentity) -> list[ResourceIdentity]:
        self._check()
        return super().children(resource)


DOCUMENT_RULES = [
    OperationRule(
        name="document.read",
        required_authorities=["ROLE_USER"],
        alternatives=["is_owner"],
        acl_permission=PermissionMask.READ,
    ),
    OperationRule(
        name="document.update",
        required_authorities=["ROLE_USER"],
        acl_permission=PermissionMask.WRITE,
    ),
    OperationRule(name="document.delete", acl_permission=PermissionMask.DELETE),
    OperationRule(name="document.view", alternatives=["is_owner"]),
    OperationRule(name="document.bulk", required_authorities=["ROLE_USER"]),
    OperationRule(name="report.view", required_authorities=["ROLE_USER"]),
    OperationRule(
        name="audit.export",
        required_authorities=["ROLE_AUDITOR"],
        admin_bypass=False,
    ),
]


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment defaults."""
    return Settings(
        environment="test",
        cache_max_entries=1000,
        denial_alert_threshold=3,
        denial_alert_window_seconds=60,
        audit_storage_type="memory",
        acl_storage_type="memory",
    )


@pytest.fixture
def storage() -> FlakyAclStorage:
    return FlakyAclStorage()


@pytest.fixture
def cache() -> PermissionCache:
    return PermissionCache(max_entries=1000)


@pytest.fixture
def store(storage: FlakyAclStorage, cache: PermissionCache) -> AclStore:
    return AclStore(storage, cache)


@pytest.fixture
def engine(settings: Settings, storage: FlakyAclStorage) -> AuthorizationEngine:
    """Engine with document rules over the flaky in-memory storage."""
    engine = build_engine(
        settings,
        storage=storage,
        audit_storage=InMemoryAuditStorage(),
    )
    for rule in DOCUMENT_RULES:
        engine.add_rule(rule)
    return engine


@pytest.fixture
def alice() -> Principal:
    return Principal(principal_id="alice", authorities={"ROLE_USER"})


@pytest.fixture
def bob() -> Principal:
    return Principal(principal_id="bob", authorities={"ROLE_USER"})


@pytest.fixture
def carol() -> Principal:
    return Principal(principal_id="carol", authorities={"ROLE_USER"})


@pytest.fixture
def admin() -> Principal:
    return Principal(principal_id="root", authorities={"ROLE_ADMIN"})


@pytest.fixture
def guest() -> Principal:
    return Principal(principal_id="guest")


@pytest.fixture
def doc() -> ResourceIdentity:
    return ResourceIdentity(type="Document", id=1)


@pytest.fixture
def folder() -> ResourceIdentity:
    return ResourceIdentity(type="Folder", id="shared")
