"""ACL storage backends.

Storage persists ``Acl`` snapshots (object identity plus ordered entries)
and is agnostic to the decision logic built on top of it. Backends must
translate their native failures into ``StorageUnavailable``.
"""

from __future__ import annotations

import hashlib
import logging
import os
import threading
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError
from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    delete,
    insert,
    select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from aclguard.acl.models import Acl, AclEntry, AclObjectIdentity, ResourceIdentity, Sid
from aclguard.config import Settings
from aclguard.errors import StorageUnavailable

logger = logging.getLogger(__name__)


class AclStorage(Protocol):
    """Protocol for ACL storage backends."""

    def load(self, resource: ResourceIdentity) -> Acl | None:
        """Load the ACL for a resource, or None if absent."""
        ...

    def save(self, acl: Acl) -> None:
        """Persist an ACL snapshot, replacing any previous one."""
        ...

    def delete(self, resource: ResourceIdentity) -> None:
        """Remove the ACL for a resource (no-op if absent)."""
        ...

    def children(self, resource: ResourceIdentity) -> list[ResourceIdentity]:
        """List resources whose parent is ``resource``."""
        ...


class InMemoryAclStorage:
    """Process-local storage for tests and single-process deployments."""

    def __init__(self):
        self._acls: dict[str, Acl] = {}
        self._lock = threading.Lock()

    def load(self, resource: ResourceIdentity) -> Acl | None:
        with self._lock:
            return self._acls.get(resource.key)

    def save(self, acl: Acl) -> None:
        with self._lock:
            self._acls[acl.resource.key] = acl

    def delete(self, resource: ResourceIdentity) -> None:
        with self._lock:
            self._acls.pop(resource.key, None)

    def children(self, resource: ResourceIdentity) -> list[ResourceIdentity]:
        with self._lock:
            return [
                acl.resource for acl in self._acls.values()
                if acl.parent is not None and acl.parent.key == resource.key
            ]

    def __len__(self) -> int:
        return len(self._acls)


class FileAclStorage:
    """File-based storage: one JSON document per resource.

    WARNING: ``children`` scans every document. Use SqlAclStorage for
    large trees.
    """

    def __init__(self, storage_path: str | Path):
        """Initialize file storage.

        Args:
            storage_path: Directory to store ACL documents
        """
        self.storage_path = Path(storage_path)
        self.storage_path.mkdir(parents=True, exist_ok=True)
        logger.info("FileAclStorage initialized at %s", self.storage_path)

    def _resource_file(self, resource: ResourceIdentity) -> Path:
        """Get the file path for a resource's ACL."""
        # Sanitize to prevent path traversal; the digest keeps names unique
        safe = "".join(c if c.isalnum() or c in "-_" else "_" for c in resource.key)
        digest = hashlib.sha256(resource.key.encode("utf-8")).hexdigest()[:12]
        return self.storage_path / f"acl_{safe[:64]}_{digest}.json"

    def _read(self, path: Path) -> Acl:
        return Acl.model_validate_json(path.read_text(encoding="utf-8"))

    def load(self, resource: ResourceIdentity) -> Acl | None:
        path = self._resource_file(resource)
        try:
            if not path.exists():
                return None
            return self._read(path)
        except (OSError, ValidationError) as exc:
            logger.error("Failed to read ACL %s: %s", resource.key, exc)
            raise StorageUnavailable(f"Cannot read ACL for {resource.key}") from exc

    def save(self, acl: Acl) -> None:
        path = self._resource_file(acl.resource)
        tmp_path = path.with_suffix(".tmp")
        try:
            # Write then rename so readers never see a partial document
            tmp_path.write_text(acl.model_dump_json(), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            logger.error("Failed to write ACL %s: %s", acl.resource.key, exc)
            raise StorageUnavailable(f"Cannot write ACL for {acl.resource.key}") from exc

    def delete(self, resource: ResourceIdentity) -> None:
        try:
            self._resource_file(resource).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageUnavailable(f"Cannot delete ACL for {resource.key}") from exc

    def children(self, resource: ResourceIdentity) -> list[ResourceIdentity]:
        result = []
        try:
            for path in sorted(self.storage_path.glob("acl_*.json")):
                acl = self._read(path)
                if acl.parent is not None and acl.parent.key == resource.key:
                    result.append(acl.resource)
        except (OSError, ValidationError) as exc:
            raise StorageUnavailable("Cannot scan ACL directory") from exc
        return result


metadata = MetaData()

acl_object_identity = Table(
    "acl_object_identity",
    metadata,
    Column("resource_key", String(512), primary_key=True),
    Column("resource_type", String(255), nullable=False),
    Column("resource_id", String(255), nullable=False),
    Column("parent_key", String(512), nullable=True, index=True),
    Column("parent_type", String(255), nullable=True),
    Column("parent_id", String(255), nullable=True),
    Column("owner_kind", String(16), nullable=False),
    Column("owner_name", String(255), nullable=False),
    Column("entries_inheriting", Boolean, nullable=False, default=True),
)

acl_entry = Table(
    "acl_entry",
    metadata,
    Column("entry_id", String(64), primary_key=True),
    Column("resource_key", String(512), nullable=False, index=True),
    Column("ordinal", Integer, nullable=False),
    Column("sid_kind", String(16), nullable=False),
    Column("sid_name", String(255), nullable=False),
    Column("mask", Integer, nullable=False),
    Column("granting", Boolean, nullable=False),
)


class SqlAclStorage:
    """SQLAlchemy-backed storage for production.

    Entry order is kept in the ``ordinal`` column.
    """

    def __init__(self, database_url: str, engine: Any = None):
        """Initialize SQL storage.

        Args:
            database_url: SQLAlchemy database URL
            engine: Optional pre-built engine (overrides database_url)
        """
        if engine is None:
            kwargs: dict[str, Any] = {}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, otherwise every thread sees its own empty DB
                kwargs["poolclass"] = StaticPool
                kwargs["connect_args"] = {"check_same_thread": False}
            engine = create_engine(database_url, **kwargs)
        self.engine = engine
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StorageUnavailable("Cannot initialise ACL tables") from exc
        logger.info("SqlAclStorage initialized (%s)", self.engine.url.get_backend_name())

    def load(self, resource: ResourceIdentity) -> Acl | None:
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(acl_object_identity).where(
                        acl_object_identity.c.resource_key == resource.key
                    )
                ).mappings().first()
                if row is None:
                    return None
                entry_rows = conn.execute(
                    select(acl_entry)
                    .where(acl_entry.c.resource_key == resource.key)
                    .order_by(acl_entry.c.ordinal)
                ).mappings().all()
        except SQLAlchemyError as exc:
            logger.error("Failed to load ACL %s: %s", resource.key, exc)
            raise StorageUnavailable(f"Cannot read ACL for {resource.key}") from exc

        return self._rows_to_acl(row, entry_rows)

    def save(self, acl: Acl) -> None:
        key = acl.resource.key
        identity = acl.identity
        try:
            with self.engine.begin() as conn:
                conn.execute(delete(acl_entry).where(acl_entry.c.resource_key == key))
                conn.execute(
                    delete(acl_object_identity).where(
                        acl_object_identity.c.resource_key == key
                    )
                )
                conn.execute(
                    insert(acl_object_identity).values(
                        resource_key=key,
                        resource_type=identity.resource.type,
                        resource_id=identity.resource.id,
                        parent_key=identity.parent.key if identity.parent else None,
                        parent_type=identity.parent.type if identity.parent else None,
                        parent_id=identity.parent.id if identity.parent else None,
                        owner_kind=identity.owner.kind,
                        owner_name=identity.owner.name,
                        entries_inheriting=identity.entries_inheriting,
                    )
                )
                if acl.entries:
                    conn.execute(
                        insert(acl_entry),
                        [
                            {
                                "entry_id": entry.entry_id,
                                "resource_key": key,
                                "ordinal": ordinal,
                                "sid_kind": entry.sid.kind,
                                "sid_name": entry.sid.name,
                                "mask": entry.mask,
                                "granting": entry.granting,
                            }
                            for ordinal, entry in enumerate(acl.entries)
                        ],
                    )
        except SQLAlchemyError as exc:
            logger.error("Failed to save ACL %s: %s", key, exc)
            raise StorageUnavailable(f"Cannot write ACL for {key}") from exc

    def delete(self, resource: ResourceIdentity) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(delete(acl_entry).where(acl_entry.c.resource_key == resource.key))
                conn.execute(
                    delete(acl_object_identity).where(
                        acl_object_identity.c.resource_key == resource.key
                    )
                )
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Cannot delete ACL for {resource.key}") from exc

    def children(self, resource: ResourceIdentity) -> list[ResourceIdentity]:
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(
                        acl_object_identity.c.resource_type,
                        acl_object_identity.c.resource_id,
                    )
                    .where(acl_object_identity.c.parent_key == resource.key)
                    .order_by(acl_object_identity.c.resource_key)
                ).all()
        except SQLAlchemyError as exc:
            raise StorageUnavailable(f"Cannot list children of {resource.key}") from exc
        return [ResourceIdentity(type=row[0], id=row[1]) for row in rows]

    def _rows_to_acl(self, row: Any, entry_rows: Any) -> Acl:
        """Convert database rows to an ACL snapshot."""
        resource = ResourceIdentity(type=row["resource_type"], id=row["resource_id"])
        parent = None
        if row["parent_key"] is not None:
            parent = ResourceIdentity(type=row["parent_type"], id=row["parent_id"])
        identity = AclObjectIdentity(
            resource=resource,
            parent=parent,
            owner=Sid(kind=row["owner_kind"], name=row["owner_name"]),
            entries_inheriting=bool(row["entries_inheriting"]),
        )
        entries = tuple(
            AclEntry(
                entry_id=entry["entry_id"],
                resource=resource,
                sid=Sid(kind=entry["sid_kind"], name=entry["sid_name"]),
                mask=entry["mask"],
                granting=bool(entry["granting"]),
            )
            for entry in entry_rows
        )
        return Acl(identity=identity, entries=entries)


def get_acl_storage(settings: Settings) -> AclStorage:
    """Get ACL storage instance based on configuration."""
    if settings.acl_storage_type == "sql":
        return SqlAclStorage(settings.acl_database_url)
    if settings.acl_storage_type == "file":
        return FileAclStorage(settings.acl_storage_path)
    return InMemoryAclStorage()
