"""Kubernetes label selector parsing and matching.

Accepts either a ``kubernetes.client.V1LabelSelector`` or the equivalent
mapping form found in policy files::

    {"matchLabels": {"app": "web"},
     "matchExpressions": [{"key": "tier", "operator": "In", "values": ["a"]}]}

``None`` matches nothing, an empty selector matches everything.
"""

import re
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import SelectorError

_NAME_RE = re.compile(r"^[A-Za-z0-9]([-A-Za-z0-9_.]*[A-Za-z0-9])?$")
_DNS_SUBDOMAIN_RE = re.compile(
    r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$"
)

IN = "In"
NOT_IN = "NotIn"
EXISTS = "Exists"
DOES_NOT_EXIST = "DoesNotExist"
_OPERATORS = (IN, NOT_IN, EXISTS, DOES_NOT_EXIST)


def _validate_key(key) -> None:
    if not isinstance(key, str) or not key:
        raise SelectorError(f"label key must be a non-empty string, got {key!r}")
    prefix, _, name = key.rpartition("/")
    if prefix and (len(prefix) > 253 or not _DNS_SUBDOMAIN_RE.match(prefix)):
        raise SelectorError(f"invalid label key prefix in {key!r}")
    if len(name) > 63 or not _NAME_RE.match(name):
        raise SelectorError(f"invalid label key {key!r}")


def _validate_value(key: str, value) -> None:
    if not isinstance(value, str):
        raise SelectorError(f"label value for {key!r} must be a string, got {value!r}")
    if value and (len(value) > 63 or not _NAME_RE.match(value)):
        raise SelectorError(f"invalid label value {value!r} for key {key!r}")


class Requirement:
    __slots__ = ("key", "operator", "values")

    def __init__(self, key: str, operator: str, values: Iterable[str] = ()):
        _validate_key(key)
        if operator not in _OPERATORS:
            raise SelectorError(f"unknown selector operator {operator!r} for key {key!r}")
        values = values or ()
        if isinstance(values, (str, Mapping)) or not isinstance(values, Iterable):
            raise SelectorError(f"values for {key!r} must be a list, got {values!r}")
        values = list(values)
        for value in values:
            _validate_value(key, value)
        values = tuple(sorted(set(values)))
        if operator in (IN, NOT_IN) and not values:
            raise SelectorError(f"operator {operator} on {key!r} requires at least one value")
        if operator in (EXISTS, DOES_NOT_EXIST) and values:
            raise SelectorError(f"operator {operator} on {key!r} takes no values")
        self.key = key
        self.operator = operator
        self.values = values

    def matches(self, labels: Mapping[str, str]) -> bool:
        if self.operator == IN:
            return self.key in labels and labels[self.key] in self.values
        if self.operator == NOT_IN:
            return labels.get(self.key) not in self.values
        if self.operator == EXISTS:
            return self.key in labels
        return self.key not in labels

    def __str__(self) -> str:
        if self.operator == EXISTS:
            return self.key
        if self.operator == DOES_NOT_EXIST:
            return f"!{self.key}"
        if self.operator == IN and len(self.values) == 1:
            return f"{self.key}={self.values[0]}"
        word = "in" if self.operator == IN else "notin"
        return f"{self.key} {word} ({','.join(self.values)})"

    def _sort_key(self) -> Tuple[str, int, Tuple[str, ...]]:
        return (self.key, _OPERATORS.index(self.operator), self.values)


class LabelSelector:
    """An AND of label requirements."""

    def __init__(self, requirements: Sequence[Requirement] = (), *, nothing: bool = False):
        self.requirements: Tuple[Requirement, ...] = tuple(
            sorted(requirements, key=Requirement._sort_key)
        )
        self.nothing = nothing

    def matches(self, labels: Optional[Mapping[str, str]]) -> bool:
        if self.nothing:
            return False
        labels = labels or {}
        return all(req.matches(labels) for req in self.requirements)

    def empty(self) -> bool:
        return not self.nothing and not self.requirements

    def __str__(self) -> str:
        if self.nothing:
            return "<none>"
        return ",".join(str(req) for req in self.requirements)

    def __repr__(self) -> str:
        return f"LabelSelector({str(self)!r})"

    def __eq__(self, other) -> bool:
        if not isinstance(other, LabelSelector):
            return NotImplemented
        return str(self) == str(other)

    def __hash__(self) -> int:
        return hash(str(self))


NOTHING = LabelSelector(nothing=True)


def _field(raw, attr: str, camel: str):
    if isinstance(raw, Mapping):
        return raw.get(camel, raw.get(attr))
    return getattr(raw, attr, None)


def parse_selector(raw) -> LabelSelector:
    """Convert a selector object or mapping into a :class:`LabelSelector`.

    Raises :class:`SelectorError` when the selector is malformed.
    """
    if raw is None:
        return NOTHING
    if isinstance(raw, LabelSelector):
        return raw

    match_labels = _field(raw, "match_labels", "matchLabels") or {}
    match_expressions = _field(raw, "match_expressions", "matchExpressions") or []
    if not isinstance(match_labels, Mapping):
        raise SelectorError(f"matchLabels must be a mapping, got {match_labels!r}")
    if isinstance(match_expressions, (str, Mapping)) or not isinstance(match_expressions, Iterable):
        raise SelectorError(f"matchExpressions must be a list, got {match_expressions!r}")

    requirements: List[Requirement] = []
    for key, value in match_labels.items():
        _validate_value(key, value)
        requirements.append(Requirement(key, IN, [value]))
    for expr in match_expressions:
        key = _field(expr, "key", "key")
        operator = _field(expr, "operator", "operator")
        values = _field(expr, "values", "values") or []
        if isinstance(values, str):
            raise SelectorError(f"values for {key!r} must be a list, got {values!r}")
        requirements.append(Requirement(key, operator, values))
    return LabelSelector(requirements)


def selector_string(raw) -> str:
    """Canonical rendering of ``raw``; falls back to ``repr`` when malformed."""
    try:
        return str(parse_selector(raw))
    except SelectorError:
        return f"<invalid {raw!r}>"

