"""Authorization error taxonomy.

Expected deny paths are returned as decisions, not raised. The exceptions
below cover the outcomes that are not a plain deny: a missing principal,
a guarded call that must be blocked, missing ACL data, storage faults and
configuration mistakes.
"""


class AuthorizationError(Exception):
    """Base class for all aclguard errors."""

    def __init__(self, message: str, code: str = "authorization_error"):
        self.message = message
        self.code = code
        super().__init__(message)


class AuthenticationRequired(AuthorizationError):
    """Raised when no principal is available for a decision."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message, "authentication_required")


class AccessDenied(AuthorizationError):
    """Raised when a guarded operation is blocked.

    Only the reason code is exposed so callers cannot enumerate which
    permissions a resource carries.
    """

    def __init__(self, reason_code: str = "access_denied"):
        self.reason_code = reason_code
        super().__init__(f"Access denied ({reason_code})", "access_denied")


class ResourceNotFound(AuthorizationError):
    """Raised when a resource has no ACL object identity."""

    def __init__(self, resource_key: str):
        self.resource_key = resource_key
        super().__init__(f"No ACL for resource {resource_key}", "resource_not_found")


class ResourceAlreadyExists(AuthorizationError):
    """Raised when creating an ACL for a resource that already has one."""

    def __init__(self, resource_key: str):
        self.resource_key = resource_key
        super().__init__(f"ACL already exists for {resource_key}", "resource_exists")


class InvalidAclHierarchy(AuthorizationError):
    """Raised when a parent change would create a cycle."""

    def __init__(self, message: str):
        super().__init__(message, "invalid_hierarchy")


class AclHasChildren(AuthorizationError):
    """Raised when deleting an ACL that still has children under the forbid policy."""

    def __init__(self, resource_key: str, children: int):
        self.resource_key = resource_key
        self.children = children
        super().__init__(
            f"ACL {resource_key} still has {children} child ACL(s)",
            "acl_has_children",
        )


class StorageUnavailable(AuthorizationError):
    """Raised when the ACL backing store fails.

    Never interpreted as a grant.
    """

    def __init__(self, message: str = "ACL storage unavailable"):
        super().__init__(message, "storage_unavailable")


class UnknownPermissionName(AuthorizationError):
    """Raised when a permission name does not map to a mask bit."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown permission name: {name!r}", "unknown_permission")


class PolicyConfigurationError(AuthorizationError):
    """Raised when static policy configuration is invalid."""

    def __init__(self, message: str):
        super().__init__(message, "policy_configuration")
