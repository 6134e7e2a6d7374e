"""Method guard.

Explicit decorator that authorizes a business operation around its
execution:

- pre-check: decide the operation before the call; a denial means the
  function never runs
- pre-filter: drop elements of a collection argument the caller may not act on
- post-check: decide against the returned object, once its owner is known
- post-filter: drop elements of a collection result

Usage:
    guard = MethodGuard(evaluator)

    @guard.protect(
        "document.read",
        resource=lambda args: ResourceIdentity(type="Document", id=args["doc_id"]),
    )
    def get_document(doc_id: int) -> Document:
        ...

    with SecurityContext.principal_scope(alice):
        get_document(42)
"""

from __future__ import annotations

import functools
import inspect
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Literal
from uuid import uuid4

from aclguard.acl.models import ResourceIdentity
from aclguard.auth.models import Principal
from aclguard.authz.context import SecurityContext
from aclguard.authz.evaluator import PolicyEvaluator
from aclguard.authz.models import AuthorizationDecision, ReasonCode
from aclguard.config import Settings
from aclguard.errors import AccessDenied, AuthenticationRequired, StorageUnavailable

logger = logging.getLogger(__name__)

MAX_RECENT_INVOCATIONS = 100

PostCheckPolicy = Literal["deny", "null"]


class InvocationState(str, Enum):
    """Lifecycle of a guarded call."""

    PRE_CHECK = "pre_check"
    EXECUTING = "executing"
    POST_CHECK = "post_check"
    RETURNED = "returned"
    DENIED = "denied"
    FAILED = "failed"


_TRANSITIONS = {
    InvocationState.PRE_CHECK: {InvocationState.EXECUTING, InvocationState.DENIED},
    InvocationState.EXECUTING: {
        InvocationState.POST_CHECK,
        InvocationState.DENIED,
        InvocationState.FAILED,
    },
    InvocationState.POST_CHECK: {InvocationState.RETURNED, InvocationState.DENIED},
    InvocationState.RETURNED: set(),
    InvocationState.DENIED: set(),
    InvocationState.FAILED: set(),
}


@dataclass
class GuardedInvocation:
    """Record of one guarded call."""

    operation: str
    function: str
    principal_id: str | None = None
    invocation_id: str = field(default_factory=lambda: uuid4().hex)
    state: InvocationState = InvocationState.PRE_CHECK
    history: list[InvocationState] = field(
        default_factory=lambda: [InvocationState.PRE_CHECK]
    )
    decisions: list[AuthorizationDecision] = field(default_factory=list)

    def transition(self, state: InvocationState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal guard transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)
        logger.debug(
            "Guarded call %s [%s] %s -> %s",
            self.function, self.invocation_id[:8], self.history[-2].value, state.value,
        )


@dataclass(frozen=True)
class GuardConfig:
    """What a guard checks around a function."""

    operation: str
    resource: Callable[[dict[str, Any]], ResourceIdentity | None] | None = None
    pre_filter: str | None = None
    filter_operation: str | None = None
    resource_of: Callable[[Any], ResourceIdentity | None] | None = None
    post_check: str | None = None
    post_filter: bool = False
    post_check_policy: PostCheckPolicy = "deny"

    @property
    def element_operation(self) -> str:
        return self.filter_operation or self.operation


def _denial(decision: AuthorizationDecision) -> Exception:
    if decision.reason == ReasonCode.STORAGE_UNAVAILABLE:
        return StorageUnavailable()
    return AccessDenied(decision.reason.value)


def _same_kind(original: Any, items: list[Any]) -> Any:
    """Rebuild a filtered collection as the type it came in as."""
    if isinstance(original, (list, tuple, set, frozenset)):
        return type(original)(items)
    return items


class MethodGuard:
    """Wraps functions with authorization checks.

    The principal comes from an explicit ``principal=`` keyword (removed
    before the call unless the function declares it) or from
    ``SecurityContext``.
    """

    def __init__(self, evaluator: PolicyEvaluator, settings: Settings | None = None):
        self.evaluator = evaluator
        self.settings = settings or evaluator.settings
        self.recent_invocations: deque[GuardedInvocation] = deque(
            maxlen=MAX_RECENT_INVOCATIONS
        )

    def protect(
        self,
        operation: str,
        *,
        resource: Callable[[dict[str, Any]], ResourceIdentity | None] | None = None,
        pre_filter: str | None = None,
        filter_operation: str | None = None,
        resource_of: Callable[[Any], ResourceIdentity | None] | None = None,
        post_check: str | bool | None = None,
        post_filter: bool = False,
        on_post_denied: PostCheckPolicy | None = None,
    ) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Build a decorator guarding a sync or async function.

        Args:
            operation: Operation decided before the call
            resource: Maps the bound arguments to the target resource
            pre_filter: Name of a collection argument to filter before the call
            filter_operation: Operation decided per element (default: ``operation``)
            resource_of: Maps an element or result to its resource identity
            post_check: Operation decided on the result (True: ``operation``)
            post_filter: Filter a collection result element by element
            on_post_denied: "deny" raises AccessDenied, "null" returns None
        """
        if post_check is True:
            post_check = operation
        config = GuardConfig(
            operation=operation,
            resource=resource,
            pre_filter=pre_filter,
            filter_operation=filter_operation,
            resource_of=resource_of,
            post_check=post_check or None,
            post_filter=post_filter,
            post_check_policy=on_post_denied or self.settings.post_check_policy,
        )
        return functools.partial(self._wrap, config)

    def _wrap(self, config: GuardConfig, func: Callable[..., Any]) -> Callable[..., Any]:
        signature = inspect.signature(func)
        takes_principal = "principal" in signature.parameters
        if config.pre_filter and config.pre_filter not in signature.parameters:
            raise ValueError(f"{func.__qualname__} has no argument {config.pre_filter!r}")

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                invocation, call_args, call_kwargs, principal = self._before(
                    config, func, signature, takes_principal, args, kwargs
                )
                try:
                    result = await func(*call_args, **call_kwargs)
                except BaseException:
                    invocation.transition(InvocationState.FAILED)
                    raise
                return self._after(config, invocation, principal, result)

            async_wrapper.guard_config = config  # type: ignore[attr-defined]
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            invocation, call_args, call_kwargs, principal = self._before(
                config, func, signature, takes_principal, args, kwargs
            )
            try:
                result = func(*call_args, **call_kwargs)
            except BaseException:
                invocation.transition(InvocationState.FAILED)
                raise
            return self._after(config, invocation, principal, result)

        wrapper.guard_config = config  # type: ignore[attr-defined]
        return wrapper

    def _before(
        self,
        config: GuardConfig,
        func: Callable[..., Any],
        signature: inspect.Signature,
        takes_principal: bool,
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
    ) -> tuple[GuardedInvocation, tuple[Any, ...], dict[str, Any], Principal]:
        """Run PRE_CHECK and move to EXECUTING. Nothing runs on denial."""
        if not takes_principal:
            kwargs = dict(kwargs)
            explicit = kwargs.pop("principal", None)
        else:
            explicit = None

        bound = signature.bind(*args, **kwargs)
        bound.apply_defaults()
        if takes_principal:
            explicit = bound.arguments.get("principal")
        principal = explicit or SecurityContext.get_principal()

        invocation = GuardedInvocation(
            operation=config.operation,
            function=func.__qualname__,
            principal_id=principal.principal_id if principal else None,
        )
        self.recent_invocations.append(invocation)

        try:
            target = config.resource(dict(bound.arguments)) if config.resource else None
            decision = self.evaluator.decide(principal, config.operation, target)
        except AuthenticationRequired:
            invocation.transition(InvocationState.DENIED)
            raise
        invocation.decisions.append(decision)

        if not decision.granted:
            invocation.transition(InvocationState.DENIED)
            raise _denial(decision)

        if config.pre_filter:
            original = bound.arguments[config.pre_filter]
            kept = self._filter(invocation, config, principal, original)
            bound.arguments[config.pre_filter] = _same_kind(original, kept)
            logger.debug(
                "Pre-filter %s.%s kept %d element(s)",
                func.__qualname__, config.pre_filter, len(kept),
            )

        invocation.transition(InvocationState.EXECUTING)
        return invocation, bound.args, bound.kwargs, principal

    def _after(
        self,
        config: GuardConfig,
        invocation: GuardedInvocation,
        principal: Principal,
        result: Any,
    ) -> Any:
        """Run POST_CHECK and finish as RETURNED or DENIED."""
        invocation.transition(InvocationState.POST_CHECK)

        if config.post_check and result is not None:
            target = config.resource_of(result) if config.resource_of else None
            decision = self.evaluator.decide(
                principal, config.post_check, target, target=result
            )
            invocation.decisions.append(decision)
            if not decision.granted:
                storage_fault = decision.reason == ReasonCode.STORAGE_UNAVAILABLE
                if config.post_check_policy == "null" and not storage_fault:
                    invocation.transition(InvocationState.RETURNED)
                    return None
                invocation.transition(InvocationState.DENIED)
                raise _denial(decision)

        if config.post_filter and result is not None:
            kept = self._filter(invocation, config, principal, result)
            result = _same_kind(result, kept)

        invocation.transition(InvocationState.RETURNED)
        return result

    def _filter(
        self,
        invocation: GuardedInvocation,
        config: GuardConfig,
        principal: Principal,
        items: Any,
    ) -> list[Any]:
        try:
            return self.evaluator.filter_collection(
                principal, config.element_operation, items, config.resource_of
            )
        except StorageUnavailable:
            invocation.transition(InvocationState.DENIED)
            raise
