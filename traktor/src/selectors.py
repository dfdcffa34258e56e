from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from traktor.src.errors import SelectorParseError

OPERATOR_IN = "In"
OPERATOR_NOT_IN = "NotIn"
OPERATOR_EXISTS = "Exists"
OPERATOR_DOES_NOT_EXIST = "DoesNotExist"
OPERATORS = frozenset({OPERATOR_IN, OPERATOR_NOT_IN, OPERATOR_EXISTS, OPERATOR_DOES_NOT_EXIST})

_NAME_PATTERN = re.compile(r"^([A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?)?$")
_DNS_SUBDOMAIN_PATTERN = re.compile(
    r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$"
)


def _validate_key(key: Any) -> str:
    """Validate a label key (``[prefix/]name``) using Kubernetes qualified-name rules."""
    if not isinstance(key, str) or not key:
        raise SelectorParseError(f"label key must be a non-empty string, got: {key!r}")

    prefix, separator, name = key.rpartition("/")
    if separator:
        if not prefix or len(prefix) > 253 or not _DNS_SUBDOMAIN_PATTERN.match(prefix):
            raise SelectorParseError(f"invalid label key prefix in {key!r}")
    if not name or len(name) > 63 or not _NAME_PATTERN.match(name):
        raise SelectorParseError(f"invalid label key {key!r}")
    return key


def _validate_value(key: str, value: Any) -> str:
    if not isinstance(value, str):
        raise SelectorParseError(f"label value for {key!r} must be a string, got: {value!r}")
    if len(value) > 63 or not _NAME_PATTERN.match(value):
        raise SelectorParseError(f"invalid label value {value!r} for key {key!r}")
    return value


@dataclass(frozen=True)
class Requirement:
    """A single set-based label requirement (``key operator values``)."""

    key: str
    operator: str
    values: frozenset[str] = frozenset()

    def matches(self, labels: Mapping[str, str]) -> bool:
        if self.operator == OPERATOR_IN:
            return self.key in labels and labels[self.key] in self.values
        if self.operator == OPERATOR_NOT_IN:
            return self.key not in labels or labels[self.key] not in self.values
        if self.operator == OPERATOR_EXISTS:
            return self.key in labels
        return self.key not in labels

    def __str__(self) -> str:
        if self.operator == OPERATOR_EXISTS:
            return self.key
        if self.operator == OPERATOR_DOES_NOT_EXIST:
            return f"!{self.key}"
        if self.operator == OPERATOR_IN and len(self.values) == 1:
            return f"{self.key}={next(iter(self.values))}"
        verb = "in" if self.operator == OPERATOR_IN else "notin"
        return f"{self.key} {verb} ({','.join(sorted(self.values))})"


@dataclass(frozen=True)
class LabelSelector:
    """Conjunction of label requirements, as used by ``metav1.LabelSelector``.

    A selector without requirements matches every label set.
    """

    requirements: tuple[Requirement, ...] = ()

    def matches(self, labels: Mapping[str, str] | None) -> bool:
        label_set = labels or {}
        return all(requirement.matches(label_set) for requirement in self.requirements)

    def __str__(self) -> str:
        return ",".join(str(requirement) for requirement in self.requirements)


def _parse_expression(expression: Any) -> Requirement:
    if not isinstance(expression, Mapping):
        raise SelectorParseError(f"matchExpressions entries must be objects, got: {expression!r}")

    key = _validate_key(expression.get("key"))
    operator = expression.get("operator")
    if operator not in OPERATORS:
        raise SelectorParseError(f"unsupported operator {operator!r} for key {key!r}")

    raw_values = expression.get("values") or []
    if not isinstance(raw_values, list):
        raise SelectorParseError(f"values for key {key!r} must be a list")
    values = frozenset(_validate_value(key, value) for value in raw_values)

    if operator in {OPERATOR_IN, OPERATOR_NOT_IN} and not values:
        raise SelectorParseError(f"operator {operator} for key {key!r} requires at least one value")
    if operator in {OPERATOR_EXISTS, OPERATOR_DOES_NOT_EXIST} and values:
        raise SelectorParseError(f"operator {operator} for key {key!r} must not have values")
    return Requirement(key=key, operator=operator, values=values)


def parse_label_selector(raw: Mapping[str, Any] | None) -> LabelSelector | None:
    """Convert a raw ``{matchLabels, matchExpressions}`` mapping into a :class:`LabelSelector`.

    Returns ``None`` when *raw* is ``None`` so callers can tell an absent
    selector (no filtering) apart from an empty one.  Requirements are sorted
    by key so evaluation and string rendering are deterministic.

    Raises :class:`SelectorParseError` for anything Kubernetes itself would
    reject: unknown operators, malformed keys or values, ``In``/``NotIn``
    without values, or ``Exists``/``DoesNotExist`` with values.
    """
    if raw is None:
        return None
    if not isinstance(raw, Mapping):
        raise SelectorParseError(f"label selector must be an object, got: {raw!r}")

    requirements: list[Requirement] = []

    match_labels = raw.get("matchLabels") or {}
    if not isinstance(match_labels, Mapping):
        raise SelectorParseError("matchLabels must be an object")
    for key, value in match_labels.items():
        valid_key = _validate_key(key)
        requirements.append(
            Requirement(
                key=valid_key,
                operator=OPERATOR_IN,
                values=frozenset({_validate_value(valid_key, value)}),
            )
        )

    match_expressions = raw.get("matchExpressions") or []
    if not isinstance(match_expressions, list):
        raise SelectorParseError("matchExpressions must be a list")
    requirements.extend(_parse_expression(expression) for expression in match_expressions)

    requirements.sort(key=lambda req: (req.key, req.operator, sorted(req.values)))
    return LabelSelector(requirements=tuple(requirements))
