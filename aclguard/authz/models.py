"""Authorization decision models.

Operation rules describe how an operation may be authorized; decisions
record how a particular request was answered.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from aclguard.acl.models import Mask, ResourceIdentity, Sid
from aclguard.acl.permissions import to_names


class ReasonCode(str, Enum):
    """Why a decision came out the way it did.

    The reason code is the only detail a denied caller ever sees.
    """

    # Grants
    ADMIN_BYPASS = "admin_bypass"
    ROLE_GRANTED = "role_granted"
    PREDICATE_GRANTED = "predicate_granted"
    ACL_GRANTED = "acl_granted"

    # Denies
    AUTHORITY_MISSING = "authority_missing"
    ACL_DENIED = "acl_denied"
    NO_MATCHING_PATH = "no_matching_path"
    NO_RULE = "no_rule"
    RESOURCE_NOT_FOUND = "resource_not_found"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    UNKNOWN_PERMISSION = "unknown_permission"
    AUTHENTICATION_REQUIRED = "authentication_required"


class AuthorityMatch(str, Enum):
    """How ``required_authorities`` are matched."""

    ALL = "all"
    ANY = "any"


class OperationRule(BaseModel):
    """How an operation may be authorized.

    ``required_authorities`` is a mandatory layer. The remaining paths
    (predicates in ``alternatives`` and the ACL check) are OR'ed.

    Example (YAML):
        document.update:
          authorities: [ROLE_USER]
          alternatives: [is_owner]
          acl_permission: WRITE
    """

    name: str = Field(min_length=1, description="Operation name, e.g. 'document.read'")
    description: str = Field(default="", description="Human-readable description")
    required_authorities: list[str] = Field(
        default_factory=list,
        description="Authorities the principal must hold (mandatory layer)",
    )
    authority_match: AuthorityMatch = Field(
        default=AuthorityMatch.ALL,
        description="Whether all or any of the authorities are required",
    )
    alternatives: list[str] = Field(
        default_factory=list,
        description="Registered predicate names, OR'ed together",
    )
    acl_permission: Mask | None = Field(
        default=None,
        description="Mask required on the resource instance, if ACL-checked",
    )
    admin_bypass: bool = Field(
        default=True,
        description="Whether the admin authority skips every other check",
    )

    @field_validator("required_authorities", "alternatives", mode="before")
    @classmethod
    def _split_names(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @property
    def is_open(self) -> bool:
        """True when passing the authority layer is enough."""
        return not self.alternatives and not self.acl_permission


class AuthorizationContext(BaseModel):
    """What a predicate can see about the request."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    operation: str
    resource: ResourceIdentity | None = None
    target: Any = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    owner_lookup: Callable[[], Sid | None] | None = Field(
        default=None, exclude=True, repr=False
    )

    def resource_owner(self) -> Sid | None:
        """Owner recorded in the resource's ACL, if there is one."""
        if self.resource is None or self.owner_lookup is None:
            return None
        return self.owner_lookup()

    def as_attributes(self, principal: Any) -> dict[str, Any]:
        """Namespace used by attribute predicates."""
        return {
            "principal": principal,
            "resource": self.resource,
            "target": self.target,
            "context": self.attributes,
        }


class AuthorizationDecision(BaseModel):
    """Result of an authorization decision."""

    model_config = ConfigDict(frozen=True)

    decision_id: str = Field(default_factory=lambda: uuid4().hex)
    granted: bool = Field(description="Whether access is granted")
    reason: ReasonCode = Field(description="Reason code for the outcome")
    principal_id: str | None = Field(
        default=None, description="Principal (None when unauthenticated)"
    )
    operation: str = Field(description="Operation that was decided")
    resource: ResourceIdentity | None = Field(default=None, description="Target instance")
    required_mask: int | None = Field(default=None, description="ACL mask checked")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the decision was made (UTC)",
    )

    @property
    def resource_type(self) -> str | None:
        return self.resource.type if self.resource else None

    @property
    def resource_id(self) -> str | None:
        return self.resource.id if self.resource else None

    def describe(self) -> str:
        outcome = "GRANTED" if self.granted else "DENIED"
        parts = [f"{outcome} {self.operation} for {self.principal_id}"]
        if self.resource is not None:
            parts.append(f"on {self.resource.key}")
        if self.required_mask:
            parts.append(f"mask={sorted(to_names(self.required_mask))}")
        parts.append(f"reason={self.reason.value}")
        return " ".join(parts)
