"""Current-principal context.

Backed by a ``ContextVar`` so each thread and each asyncio task sees its
own principal.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Generator

from aclguard.auth.models import Principal

_current_principal: ContextVar[Principal | None] = ContextVar(
    "aclguard_current_principal", default=None
)


class SecurityContext:
    """Holds the principal of the current call."""

    @classmethod
    def set_principal(cls, principal: Principal | None) -> None:
        """Set the current principal."""
        _current_principal.set(principal)

    @classmethod
    def get_principal(cls) -> Principal | None:
        """Get the current principal, if any."""
        return _current_principal.get()

    @classmethod
    def clear(cls) -> None:
        """Clear the current principal."""
        _current_principal.set(None)

    @classmethod
    @contextmanager
    def principal_scope(cls, principal: Principal) -> Generator[Principal, None, None]:
        """Context manager running a block as ``principal``."""
        token = _current_principal.set(principal)
        try:
            yield principal
        finally:
            _current_principal.reset(token)
