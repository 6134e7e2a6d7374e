"""Authorization decisions.

Operation rules combine a mandatory authority layer with OR'ed
alternative paths (business predicates and per-instance ACL checks).

Usage:
    from aclguard.authz import MethodGuard, OperationRule, SecurityContext

    engine.add_rule(OperationRule(
        name="document.read",
        alternatives=["is_owner"],
        acl_permission="READ",
    ))

    @engine.protect("document.read", resource=lambda args: args["doc"])
    def read(doc):
        ...
"""

from aclguard.authz.context import SecurityContext
from aclguard.authz.engine import AuthorizationEngine, build_engine, get_engine
from aclguard.authz.evaluator import PolicyEvaluator
from aclguard.authz.guard import GuardedInvocation, GuardConfig, InvocationState, MethodGuard
from aclguard.authz.models import (
    AuthorityMatch,
    AuthorizationContext,
    AuthorizationDecision,
    OperationRule,
    ReasonCode,
)
from aclguard.authz.policy import load_policy_document, load_policy_file
from aclguard.authz.predicates import (
    AttributeCondition,
    ConditionOperator,
    PredicateRegistry,
    all_of,
    any_of,
    attribute,
    has_authority,
    is_owner,
    negate,
)

__all__ = [
    "AttributeCondition",
    "AuthorityMatch",
    "AuthorizationContext",
    "AuthorizationDecision",
    "AuthorizationEngine",
    "ConditionOperator",
    "GuardConfig",
    "GuardedInvocation",
    "InvocationState",
    "MethodGuard",
    "OperationRule",
    "PolicyEvaluator",
    "PredicateRegistry",
    "ReasonCode",
    "SecurityContext",
    "all_of",
    "any_of",
    "attribute",
    "build_engine",
    "get_engine",
    "has_authority",
    "is_owner",
    "load_policy_document",
    "load_policy_file",
    "negate",
]
