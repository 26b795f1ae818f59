from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from controller.src.errors import InvalidSelector

OP_IN = "In"
OP_NOT_IN = "NotIn"
OP_EXISTS = "Exists"
OP_DOES_NOT_EXIST = "DoesNotExist"
OP_EQUALS = "="

_SET_OPERATORS = {OP_IN, OP_NOT_IN}
_PRESENCE_OPERATORS = {OP_EXISTS, OP_DOES_NOT_EXIST}

_NAME_RE = re.compile(r"^([A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?)?$")
_DNS_SUBDOMAIN_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")


def _validate_key(key: Any) -> str:
    if not isinstance(key, str) or not key:
        raise InvalidSelector(f"label key must be a non-empty string, got: {key!r}")
    prefix, slash, name = key.rpartition("/")
    if slash:
        if not prefix or len(prefix) > 253 or not _DNS_SUBDOMAIN_RE.match(prefix):
            raise InvalidSelector(f"invalid label key prefix in {key!r}")
    if not name or len(name) > 63 or not _NAME_RE.match(name):
        raise InvalidSelector(f"invalid label key {key!r}")
    return key


def _validate_value(key: str, value: Any) -> str:
    if not isinstance(value, str):
        raise InvalidSelector(f"value for label {key!r} must be a string, got: {value!r}")
    if len(value) > 63 or not _NAME_RE.match(value):
        raise InvalidSelector(f"invalid value {value!r} for label {key!r}")
    return value


@dataclass(frozen=True)
class Requirement:
    key: str
    operator: str
    values: tuple[str, ...] = ()

    def matches(self, labels: Mapping[str, str]) -> bool:
        if self.operator == OP_EQUALS:
            return labels.get(self.key) == self.values[0]
        if self.operator == OP_IN:
            return self.key in labels and labels[self.key] in self.values
        if self.operator == OP_NOT_IN:
            return labels.get(self.key) not in self.values
        if self.operator == OP_EXISTS:
            return self.key in labels
        return self.key not in labels

    def to_query(self) -> str:
        if self.operator == OP_EQUALS:
            return f"{self.key}={self.values[0]}"
        if self.operator == OP_IN:
            return f"{self.key} in ({','.join(self.values)})"
        if self.operator == OP_NOT_IN:
            return f"{self.key} notin ({','.join(self.values)})"
        if self.operator == OP_EXISTS:
            return self.key
        return f"!{self.key}"


@dataclass(frozen=True)
class LabelSelector:
    """A parsed Kubernetes label selector.

    A selector without requirements matches every object, so an absent
    selector narrows nothing within the target namespace.
    """

    requirements: tuple[Requirement, ...] = ()

    @property
    def is_everything(self) -> bool:
        return not self.requirements

    def matches(self, labels: Mapping[str, str] | None) -> bool:
        labels = labels or {}
        return all(requirement.matches(labels) for requirement in self.requirements)

    def to_query(self) -> str:
        """Render the selector in the ``label_selector`` query syntax of the Kubernetes API."""
        return ",".join(requirement.to_query() for requirement in self.requirements)

    def __str__(self) -> str:
        return self.to_query() or "<everything>"


def _parse_expression(raw: Any) -> Requirement:
    if not isinstance(raw, Mapping):
        raise InvalidSelector(f"matchExpressions entries must be objects, got: {raw!r}")
    key = _validate_key(raw.get("key"))
    operator = raw.get("operator")
    values = raw.get("values") or []
    if not isinstance(values, list):
        raise InvalidSelector(f"values for {key!r} must be a list")

    if operator in _SET_OPERATORS:
        if not values:
            raise InvalidSelector(f"operator {operator} on {key!r} requires at least one value")
        checked = sorted({_validate_value(key, value) for value in values})
        return Requirement(key=key, operator=operator, values=tuple(checked))
    if operator in _PRESENCE_OPERATORS:
        if values:
            raise InvalidSelector(f"operator {operator} on {key!r} does not accept values")
        return Requirement(key=key, operator=operator)
    raise InvalidSelector(f"unsupported operator {operator!r} on {key!r}")


def _check_conflicts(requirements: list[Requirement]) -> None:
    """Reject selectors that can never match anything."""
    equals: dict[str, str] = {}
    presence: dict[str, set[str]] = {}
    for requirement in requirements:
        if requirement.operator == OP_EQUALS:
            equals[requirement.key] = requirement.values[0]
        elif requirement.operator in _PRESENCE_OPERATORS:
            presence.setdefault(requirement.key, set()).add(requirement.operator)

    for key, operators in presence.items():
        if operators == _PRESENCE_OPERATORS:
            raise InvalidSelector(f"conflicting requirements: {key!r} both Exists and DoesNotExist")

    for requirement in requirements:
        expected = equals.get(requirement.key)
        if expected is None:
            continue
        if requirement.operator == OP_DOES_NOT_EXIST:
            conflict = True
        elif requirement.operator == OP_IN:
            conflict = expected not in requirement.values
        elif requirement.operator == OP_NOT_IN:
            conflict = expected in requirement.values
        else:
            conflict = False
        if conflict:
            raise InvalidSelector(
                f"conflicting requirements: matchLabels {requirement.key}={expected} "
                f"contradicts {requirement.operator} {list(requirement.values)}"
            )


def parse_selector(raw: Mapping[str, Any] | None) -> LabelSelector:
    """Parse a ``LabelSelector`` mapping (``matchLabels`` / ``matchExpressions``).

    Raises :class:`InvalidSelector` for structurally invalid input rather
    than treating it as a selector that matches nothing.
    """
    if raw is None:
        return LabelSelector()
    if not isinstance(raw, Mapping):
        raise InvalidSelector(f"selector must be an object, got: {raw!r}")

    unknown = set(raw) - {"matchLabels", "matchExpressions"}
    if unknown:
        raise InvalidSelector(f"unknown selector fields: {', '.join(sorted(map(str, unknown)))}")

    requirements: list[Requirement] = []

    match_labels = raw.get("matchLabels") or {}
    if not isinstance(match_labels, Mapping):
        raise InvalidSelector("matchLabels must be a map of label key to value")
    for key in sorted(match_labels, key=str):
        checked_key = _validate_key(key)
        value = _validate_value(checked_key, match_labels[key])
        requirements.append(Requirement(key=checked_key, operator=OP_EQUALS, values=(value,)))

    expressions = raw.get("matchExpressions") or []
    if not isinstance(expressions, list):
        raise InvalidSelector("matchExpressions must be a list")
    requirements.extend(_parse_expression(expression) for expression in expressions)

    _check_conflicts(requirements)
    return LabelSelector(requirements=tuple(requirements))
