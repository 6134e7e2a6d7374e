"""Identity models.

The engine never authenticates callers. It receives a ``Principal``
resolved by an identity collaborator and treats it as immutable for the
duration of a request.
"""

from __future__ import annotations

import hashlib
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field, field_validator

from aclguard.acl.models import Sid


class Principal(BaseModel):
    """Authenticated actor and its granted authorities.

    Authorities are plain string tokens such as ``ROLE_ADMIN`` or
    ``WRITE_DOCUMENTS``.
    """

    model_config = ConfigDict(frozen=True)

    principal_id: str = Field(min_length=1, description="Unique principal identifier")
    authorities: frozenset[str] = Field(
        default_factory=frozenset,
        description="Granted authorities (roles and fine-grained rights)",
    )
    display_name: str | None = Field(default=None, description="Human-readable name")

    @field_validator("authorities", mode="before")
    @classmethod
    def _strip_authorities(cls, value: Iterable[str] | None) -> frozenset[str]:
        if value is None:
            return frozenset()
        if isinstance(value, str):
            value = value.split(",")
        return frozenset(a.strip() for a in value if a and a.strip())

    def has_authority(self, authority: str) -> bool:
        """Check if the principal holds a specific authority."""
        return authority in self.authorities

    def has_any_authority(self, authorities: Iterable[str]) -> bool:
        """Check if the principal holds any of the authorities."""
        return any(a in self.authorities for a in authorities)

    def has_all_authorities(self, authorities: Iterable[str]) -> bool:
        """Check if the principal holds every one of the authorities."""
        return all(a in self.authorities for a in authorities)

    def sids(self) -> frozenset[Sid]:
        """Security identities this principal matches in ACL entries."""
        return frozenset(
            [Sid.principal(self.principal_id)]
            + [Sid.authority(a) for a in self.authorities]
        )

    @property
    def cache_key(self) -> str:
        """Stable key for equal principals, used by the permission cache."""
        material = "\x1f".join([self.principal_id, *sorted(self.authorities)])
        return hashlib.sha256(material.encode("utf-8")).hexdigest()[:32]
