"""Business predicates.

A predicate is a pure function ``(principal, context) -> bool | None``.
None means the data it needs is absent; it stays None through ``negate``
and the combinators and is a deny wherever a rule consumes it. Predicates are looked up by name so operation rules can
reference them from static configuration.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Any, Callable

from pydantic import BaseModel, Field

from aclguard.acl.models import Sid
from aclguard.auth.models import Principal
from aclguard.authz.models import AuthorizationContext
from aclguard.errors import PolicyConfigurationError, StorageUnavailable

logger = logging.getLogger(__name__)

Predicate = Callable[[Principal, AuthorizationContext], bool | None]


# =============================================================================
# Attribute conditions
# =============================================================================


class ConditionOperator(str, Enum):
    """Operators for attribute conditions."""

    EQUALS = "eq"
    NOT_EQUALS = "neq"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    GREATER_THAN = "gt"
    LESS_THAN = "lt"
    GREATER_OR_EQUAL = "gte"
    LESS_OR_EQUAL = "lte"


_MISSING = object()


def resolve_path(namespace: dict[str, Any], path: str) -> Any:
    """Navigate a dotted path through dicts and attributes.

    Returns ``None`` when any step is missing.
    """
    current: Any = namespace
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        else:
            current = getattr(current, part, _MISSING)
        if current is _MISSING or current is None:
            return None
    return current


class AttributeCondition(BaseModel):
    """Evaluates ``{attribute} {operator} {value}``.

    The attribute path is rooted at ``principal``, ``resource``, ``target``
    or ``context``. ``value_from`` compares against another path instead of
    a literal.

    Examples:
    - target.classification in ["public", "internal"]
    - target.department eq (value_from) principal.display_name
    """

    attribute: str = Field(
        description="Attribute path (e.g., 'target.owner', 'context.channel')"
    )
    operator: ConditionOperator = Field(description="Comparison operator")
    value: Any = Field(default=None, description="Literal to compare against")
    value_from: str | None = Field(
        default=None, description="Attribute path to compare against instead"
    )

    def evaluate(self, namespace: dict[str, Any]) -> bool | None:
        """Evaluate the condition against a namespace.

        Returns None when the attribute (or ``value_from``) is absent.
        """
        current = resolve_path(namespace, self.attribute)
        if current is None:
            return None

        expected = self.value
        if self.value_from is not None:
            expected = resolve_path(namespace, self.value_from)
            if expected is None:
                return None

        try:
            return _apply(self.operator, current, expected)
        except TypeError:
            # Incomparable types are absent data
            return None


def _apply(operator: ConditionOperator, current: Any, expected: Any) -> bool:
    if operator == ConditionOperator.EQUALS:
        return current == expected
    elif operator == ConditionOperator.NOT_EQUALS:
        return current != expected
    elif operator == ConditionOperator.IN:
        return current in expected
    elif operator == ConditionOperator.NOT_IN:
        return current not in expected
    elif operator == ConditionOperator.CONTAINS:
        return expected in current
    elif operator == ConditionOperator.STARTS_WITH:
        return str(current).startswith(str(expected))
    elif operator == ConditionOperator.ENDS_WITH:
        return str(current).endswith(str(expected))
    elif operator == ConditionOperator.GREATER_THAN:
        return current > expected
    elif operator == ConditionOperator.LESS_THAN:
        return current < expected
    elif operator == ConditionOperator.GREATER_OR_EQUAL:
        return current >= expected
    elif operator == ConditionOperator.LESS_OR_EQUAL:
        return current <= expected
    return False


# =============================================================================
# Built-in predicates and combinators
# =============================================================================


def is_owner(principal: Principal, context: AuthorizationContext) -> bool | None:
    """True if the principal owns the target object or the resource's ACL.

    The target's ``owner`` attribute (or key) is consulted first, then the
    owner recorded on the resource's ACL. None when neither is known.
    """
    owner = resolve_path({"target": context.target}, "target.owner")
    if owner is not None:
        return str(owner) == principal.principal_id
    acl_owner = context.resource_owner()
    if acl_owner is None:
        return None
    return acl_owner == Sid.principal(principal.principal_id)


def has_authority(authority: str) -> Predicate:
    def predicate(principal: Principal, context: AuthorizationContext) -> bool:
        return principal.has_authority(authority)

    predicate.__name__ = f"has_authority({authority})"
    return predicate


def attribute(path: str, operator: ConditionOperator | str, value: Any = None) -> Predicate:
    """Build a predicate from a single attribute condition."""
    condition = AttributeCondition(attribute=path, operator=operator, value=value)

    def predicate(principal: Principal, context: AuthorizationContext) -> bool | None:
        return condition.evaluate(context.as_attributes(principal))

    predicate.__name__ = f"attribute({path} {condition.operator.value})"
    return predicate


def all_of(*predicates: Predicate) -> Predicate:
    """False if any is False, otherwise None if any is absent."""

    def predicate(principal: Principal, context: AuthorizationContext) -> bool | None:
        unknown = False
        for p in predicates:
            result = p(principal, context)
            if result is None:
                unknown = True
            elif not result:
                return False
        return None if unknown else True

    return predicate


def any_of(*predicates: Predicate) -> Predicate:
    """True if any is True, otherwise None if any is absent."""

    def predicate(principal: Principal, context: AuthorizationContext) -> bool | None:
        unknown = False
        for p in predicates:
            result = p(principal, context)
            if result is None:
                unknown = True
            elif result:
                return True
        return None if unknown else False

    return predicate


def negate(inner: Predicate) -> Predicate:
    """Logical not. Absent data stays absent, so it still denies."""

    def predicate(principal: Principal, context: AuthorizationContext) -> bool | None:
        result = inner(principal, context)
        if result is None:
            return None
        return not result

    return predicate


# =============================================================================
# Registry
# =============================================================================


class PredicateRegistry:
    """Named predicates available to operation rules.

    Usage:
        registry = PredicateRegistry()

        @registry.register("is_public")
        def is_public(principal, context):
            return getattr(context.target, "public", False)

        registry.evaluate("is_public", principal, context)
    """

    def __init__(self):
        self._predicates: dict[str, Predicate] = {"is_owner": is_owner}
        self._lock = threading.Lock()

    def register(self, name: str, predicate: Predicate | None = None) -> Any:
        """Register a predicate. Usable directly or as a decorator."""
        if predicate is None:
            def decorator(func: Predicate) -> Predicate:
                self.register(name, func)
                return func

            return decorator

        with self._lock:
            # Copy on write: evaluators iterate without locking
            predicates = dict(self._predicates)
            predicates[name] = predicate
            self._predicates = predicates
        logger.debug("Registered predicate: %s", name)
        return predicate

    def get(self, name: str) -> Predicate:
        """Look up a predicate.

        Raises:
            PolicyConfigurationError: If no predicate has that name
        """
        try:
            return self._predicates[name]
        except KeyError:
            raise PolicyConfigurationError(f"Unknown predicate: {name!r}") from None

    def names(self) -> list[str]:
        return sorted(self._predicates)

    def __contains__(self, name: object) -> bool:
        return name in self._predicates

    def evaluate(
        self, name: str, principal: Principal, context: AuthorizationContext
    ) -> bool:
        """Evaluate a named predicate. Absent data and errors count as False.

        Raises:
            StorageUnavailable: If the predicate needed ACL storage and it failed
        """
        predicate = self.get(name)
        try:
            return bool(predicate(principal, context))
        except StorageUnavailable:
            raise
        except Exception:
            logger.exception(
                "Predicate %s failed for principal=%s operation=%s; treating as false",
                name, principal.principal_id, context.operation,
            )
            return False
