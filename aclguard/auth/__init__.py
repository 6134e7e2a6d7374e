"""Identity for authorization decisions.

The engine does not authenticate anyone itself. Resolvers turn a bearer
token into a ``Principal``; everything downstream only sees the principal.
"""

from aclguard.auth.models import Principal
from aclguard.auth.resolvers import (
    DevTokenResolver,
    IdentityResolver,
    StaticIdentityResolver,
)

__all__ = [
    "DevTokenResolver",
    "IdentityResolver",
    "Principal",
    "StaticIdentityResolver",
]
