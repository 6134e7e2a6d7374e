"""ACL data models.

Resource identities, security identities (SIDs), ACL entries and the
object-identity tree. All models are immutable: a mutation produces a new
``Acl`` snapshot that replaces the old one in storage.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from aclguard.acl.permissions import PermissionMask, parse_mask, to_names


def _coerce_mask(value: Any) -> Any:
    if value is None or isinstance(value, bool):
        return value
    return int(parse_mask(value))


Mask = Annotated[int, BeforeValidator(_coerce_mask)]


class ResourceIdentity(BaseModel):
    """A protected resource instance, e.g. ``("Document", 42)``.

    Ids are normalised to strings so identities round-trip through every
    storage backend unchanged.
    """

    model_config = ConfigDict(frozen=True)

    type: str = Field(
        min_length=1,
        pattern=r"^[^:]+$",
        description="Resource type, e.g. 'Document' (no colons: it prefixes the key)",
    )
    id: Annotated[str, BeforeValidator(str)] = Field(description="Id unique within the type")

    @property
    def key(self) -> str:
        """Stable string key used by caches, locks and storage."""
        return f"{self.type}:{self.id}"

    @classmethod
    def from_key(cls, key: str) -> "ResourceIdentity":
        """Parse a ``type:id`` key."""
        resource_type, _, resource_id = key.partition(":")
        return cls(type=resource_type, id=resource_id)

    def __str__(self) -> str:
        return self.key


class Sid(BaseModel):
    """Security identity: a principal or a granted authority."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["principal", "authority"]
    name: str = Field(min_length=1)

    @classmethod
    def principal(cls, name: str) -> "Sid":
        return cls(kind="principal", name=name)

    @classmethod
    def authority(cls, name: str) -> "Sid":
        return cls(kind="authority", name=name)

    def __str__(self) -> str:
        return f"{self.kind}:{self.name}"


class AclEntry(BaseModel):
    """A single access control entry.

    A non-granting entry denies its bits for the SID. Entries are evaluated
    in insertion order, so their position is part of their meaning.
    """

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=lambda: uuid4().hex)
    resource: ResourceIdentity
    sid: Sid
    mask: Mask
    granting: bool = True

    @property
    def permission(self) -> PermissionMask:
        return PermissionMask(self.mask)

    def same_rule(self, other: "AclEntry") -> bool:
        """Check whether two entries express the same SID/mask/effect."""
        return (
            self.sid == other.sid
            and self.mask == other.mask
            and self.granting == other.granting
        )

    def describe(self) -> str:
        effect = "grant" if self.granting else "deny"
        return f"{effect} {sorted(to_names(self.mask))} to {self.sid}"


class AclObjectIdentity(BaseModel):
    """Node of the ACL inheritance tree."""

    model_config = ConfigDict(frozen=True)

    resource: ResourceIdentity
    parent: ResourceIdentity | None = None
    owner: Sid
    entries_inheriting: bool = True


class Acl(BaseModel):
    """Object identity together with its ordered entries."""

    model_config = ConfigDict(frozen=True)

    identity: AclObjectIdentity
    entries: tuple[AclEntry, ...] = ()

    @property
    def resource(self) -> ResourceIdentity:
        return self.identity.resource

    @property
    def parent(self) -> ResourceIdentity | None:
        return self.identity.parent

    def entries_for(self, sid: Sid) -> list[AclEntry]:
        return [entry for entry in self.entries if entry.sid == sid]

    def with_entries(self, entries: list[AclEntry] | tuple[AclEntry, ...]) -> "Acl":
        return self.model_copy(update={"entries": tuple(entries)})

    def with_identity(self, **changes: Any) -> "Acl":
        return self.model_copy(
            update={"identity": self.identity.model_copy(update=changes)}
        )


class AclCheckResult(BaseModel):
    """Outcome of an ACL resolution."""

    granted: bool
    required: int
    matched_entries: list[AclEntry] = Field(default_factory=list)
    chain: list[str] = Field(default_factory=list, description="Resource keys walked")
    cached: bool = False
