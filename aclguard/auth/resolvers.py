"""Identity resolvers.

A resolver maps the raw credential presented by a caller to a
``Principal``. All implementations raise ``AuthenticationRequired`` when
they cannot vouch for the caller.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from aclguard.auth.models import Principal
from aclguard.config import Settings, get_settings
from aclguard.errors import AuthenticationRequired, PolicyConfigurationError

logger = logging.getLogger(__name__)


class IdentityResolver(ABC):
    """Abstract identity resolver.

    Implementations:
    - StaticIdentityResolver: registered bearer tokens (hashed at rest)
    - DevTokenResolver: development-only self-describing tokens
    """

    @property
    @abstractmethod
    def is_secure(self) -> bool:
        """Return whether this resolver is safe for production."""
        pass

    @abstractmethod
    def resolve(self, token: str | None) -> Principal:
        """Resolve a credential to a principal.

        Args:
            token: Raw bearer token (None when the caller sent nothing)

        Returns:
            The authenticated principal

        Raises:
            AuthenticationRequired: If the token is missing or not recognised
        """
        pass


class RegisteredToken(BaseModel):
    """A token registration. Only the hash of the token is kept."""

    token_hash: str
    principal: Principal
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    enabled: bool = True
    last_used_at: datetime | None = None


class StaticIdentityResolver(IdentityResolver):
    """Resolves bearer tokens registered ahead of time.

    Usage:
        resolver = StaticIdentityResolver()
        token = resolver.generate_token()
        resolver.register(token, Principal(principal_id="alice"))

        resolver.resolve(token).principal_id  # "alice"
    """

    def __init__(self):
        self._tokens: dict[str, RegisteredToken] = {}
        self._lock = threading.Lock()

    @property
    def is_secure(self) -> bool:
        return True

    @staticmethod
    def _hash_token(token: str) -> str:
        """Hash a token using SHA-256."""
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    def register(self, token: str, principal: Principal) -> str:
        """Register a token for a principal.

        Returns:
            The token hash (used to revoke it later)
        """
        token_hash = self._hash_token(token)
        with self._lock:
            self._tokens[token_hash] = RegisteredToken(
                token_hash=token_hash, principal=principal
            )
        logger.info("Token registered for principal=%s", principal.principal_id)
        return token_hash

    def revoke(self, token_hash: str) -> bool:
        """Disable a token by its hash."""
        with self._lock:
            registration = self._tokens.get(token_hash)
            if registration is None:
                return False
            registration.enabled = False
        logger.info("Token revoked for principal=%s", registration.principal.principal_id)
        return True

    def generate_token(self) -> str:
        """Generate a secure random token."""
        return f"acl_{secrets.token_urlsafe(32)}"

    def resolve(self, token: str | None) -> Principal:
        if not token:
            raise AuthenticationRequired()

        with self._lock:
            registration = self._tokens.get(self._hash_token(token))
            if registration is None:
                logger.warning("Unknown token presented: %s...", token[:8])
                raise AuthenticationRequired("Invalid or revoked token")
            if not registration.enabled:
                logger.warning(
                    "Revoked token presented for principal=%s",
                    registration.principal.principal_id,
                )
                raise AuthenticationRequired("Invalid or revoked token")
            registration.last_used_at = datetime.now(timezone.utc)
            return registration.principal


class DevTokenResolver(IdentityResolver):
    """Development-only resolver for ``dev:<principal_id>:<auth1,auth2>`` tokens.

    SECURITY WARNING:
    The token describes its own identity and authorities without any
    verification. Construction fails when the environment is production.
    """

    PREFIX = "dev"

    def __init__(self, settings: Settings | None = None):
        settings = settings or get_settings()
        if settings.is_production:
            raise PolicyConfigurationError(
                "DevTokenResolver cannot be used in production"
            )
        logger.warning(
            "DevTokenResolver is ACTIVE: tokens are trusted without verification "
            "(environment=%s)",
            settings.environment,
        )

    @property
    def is_secure(self) -> bool:
        return False  # NEVER secure

    def resolve(self, token: str | None) -> Principal:
        if not token:
            raise AuthenticationRequired()

        prefix, _, rest = token.partition(":")
        principal_id, _, authorities = rest.partition(":")
        if prefix != self.PREFIX or not principal_id:
            raise AuthenticationRequired("Malformed development token")

        return Principal(principal_id=principal_id, authorities=authorities)
