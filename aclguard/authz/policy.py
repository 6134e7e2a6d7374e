"""Static policy configuration.

Operation rules and attribute predicates can be declared in YAML:

    predicates:
      public_document:
        attribute: target.classification
        operator: in
        value: [public, internal]
      owner_or_public:
        any_of: [is_owner, public_document]

    operations:
      document.read:
        authorities: [ROLE_USER]
        alternatives: [owner_or_public]
        acl_permission: READ
      document.purge:
        authorities: [ROLE_ADMIN]

Mistakes (unknown permission names, unknown predicates, bad fields) raise
at load time so a misconfigured service never starts.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from aclguard.authz.models import OperationRule
from aclguard.authz.predicates import (
    AttributeCondition,
    Predicate,
    PredicateRegistry,
    all_of,
    any_of,
    negate,
)
from aclguard.errors import PolicyConfigurationError

logger = logging.getLogger(__name__)

_OPERATION_ALIASES = {
    "authorities": "required_authorities",
    "match": "authority_match",
}

_COMBINATORS = ("all_of", "any_of", "not")


def _reference(registry: PredicateRegistry, name: str) -> Predicate:
    """Late-bound reference so definitions may appear in any order."""

    def predicate(principal: Any, context: Any) -> bool | None:
        return registry.get(name)(principal, context)

    predicate.__name__ = name
    return predicate


def _build_predicate(
    name: str, definition: Any, registry: PredicateRegistry
) -> tuple[Predicate, list[str]]:
    """Build a predicate from its YAML definition.

    Returns:
        The predicate and the names it references
    """
    if not isinstance(definition, dict):
        raise PolicyConfigurationError(f"Predicate {name!r} must be a mapping")

    combinators = [key for key in _COMBINATORS if key in definition]
    if len(combinators) > 1 or (combinators and "attribute" in definition):
        raise PolicyConfigurationError(
            f"Predicate {name!r} must define exactly one of attribute, all_of, any_of, not"
        )

    if combinators:
        kind = combinators[0]
        refs = definition[kind]
        if kind == "not":
            if not isinstance(refs, str):
                raise PolicyConfigurationError(f"Predicate {name!r}: 'not' takes one name")
            return negate(_reference(registry, refs)), [refs]
        if not isinstance(refs, list) or not refs:
            raise PolicyConfigurationError(
                f"Predicate {name!r}: {kind!r} takes a non-empty list of names"
            )
        inner = [_reference(registry, ref) for ref in refs]
        combined = all_of(*inner) if kind == "all_of" else any_of(*inner)
        return combined, list(refs)

    try:
        condition = AttributeCondition.model_validate(definition)
    except ValidationError as exc:
        raise PolicyConfigurationError(f"Predicate {name!r} is invalid: {exc}") from exc

    def predicate(principal: Any, context: Any) -> bool | None:
        return condition.evaluate(context.as_attributes(principal))

    predicate.__name__ = name
    return predicate, []


def load_policy_document(
    document: dict[str, Any] | None,
    registry: PredicateRegistry,
) -> dict[str, OperationRule]:
    """Register declared predicates and build operation rules.

    Args:
        document: Parsed policy document
        registry: Registry receiving the declared predicates

    Returns:
        Operation rules keyed by operation name

    Raises:
        PolicyConfigurationError: On malformed rules or unknown predicates
        UnknownPermissionName: On an unknown ``acl_permission`` name
    """
    if document is None:
        return {}
    if not isinstance(document, dict):
        raise PolicyConfigurationError("Policy document must be a mapping")

    unknown_sections = set(document) - {"predicates", "operations"}
    if unknown_sections:
        raise PolicyConfigurationError(f"Unknown policy sections: {sorted(unknown_sections)}")

    references: dict[str, list[str]] = {}
    for name, definition in (document.get("predicates") or {}).items():
        predicate, refs = _build_predicate(name, definition, registry)
        registry.register(name, predicate)
        references[name] = refs

    for name, refs in references.items():
        missing = [ref for ref in refs if ref not in registry]
        if missing:
            raise PolicyConfigurationError(
                f"Predicate {name!r} references unknown predicates: {missing}"
            )

    rules: dict[str, OperationRule] = {}
    for name, definition in (document.get("operations") or {}).items():
        definition = dict(definition or {})
        for alias, field_name in _OPERATION_ALIASES.items():
            if alias in definition:
                definition[field_name] = definition.pop(alias)

        unknown_fields = set(definition) - set(OperationRule.model_fields) - {"name"}
        if unknown_fields:
            raise PolicyConfigurationError(
                f"Operation {name!r} has unknown fields: {sorted(unknown_fields)}"
            )

        try:
            rule = OperationRule.model_validate({**definition, "name": name})
        except ValidationError as exc:
            raise PolicyConfigurationError(f"Operation {name!r} is invalid: {exc}") from exc

        missing = [alt for alt in rule.alternatives if alt not in registry]
        if missing:
            raise PolicyConfigurationError(
                f"Operation {name!r} references unknown predicates: {missing}"
            )
        rules[name] = rule

    logger.info(
        "Loaded policy: %d operation(s), %d predicate(s)", len(rules), len(references)
    )
    return rules


def load_policy_file(path: str | Path, registry: PredicateRegistry) -> dict[str, OperationRule]:
    """Load operation rules from a YAML file."""
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            document = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as exc:
        raise PolicyConfigurationError(f"Cannot read policy file {path}: {exc}") from exc

    logger.info("Loading policy file %s", path)
    return load_policy_document(document, registry)
