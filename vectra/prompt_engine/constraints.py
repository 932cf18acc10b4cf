"""Constraint rules evaluated after prompt assembly.

Blueprint constraints are free-form strings. Two shapes are understood as
rules over the filter selection:

- ``a=x excludes b=y``: selecting both values is a violation.
- ``a=x requires b=y``: selecting ``a=x`` without ``b=y`` is a violation.

A term may omit ``=value`` to match any selected value for the key. Any other
string is a textual directive that is rendered into the prompt instead.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Tuple

_RULE_PATTERN = re.compile(
    r"^\s*(?P<left>[\w.\-]+(?:\s*=\s*[\w.\-]+)?)\s+(?P<op>excludes|requires)\s+(?P<right>[\w.\-]+(?:\s*=\s*[\w.\-]+)?)\s*$",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class Term:
    key: str
    value: Optional[str] = None

    def matches(self, filters: Mapping[str, str]) -> bool:
        if self.key not in filters:
            return False
        return self.value is None or filters[self.key] == self.value

    def __str__(self) -> str:
        return self.key if self.value is None else f"{self.key}={self.value}"


@dataclass(frozen=True)
class ConstraintRule:
    left: Term
    operator: str
    right: Term
    message: Optional[str] = None

    def is_violated(self, filters: Mapping[str, str]) -> bool:
        if not self.left.matches(filters):
            return False
        if self.operator == "excludes":
            return self.right.matches(filters)
        return not self.right.matches(filters)

    def describe(self) -> str:
        return self.message or f"{self.left} {self.operator} {self.right}"


def _parse_term(raw: str) -> Term:
    if "=" in raw:
        key, value = raw.split("=", 1)
        return Term(key=key.strip(), value=value.strip())
    return Term(key=raw.strip())


def parse_rule(expression: str, message: Optional[str] = None) -> Optional[ConstraintRule]:
    """Parse ``expression`` into a rule, or return ``None`` for textual constraints."""

    match = _RULE_PATTERN.match(expression or "")
    if not match:
        return None
    return ConstraintRule(
        left=_parse_term(match.group("left")),
        operator=match.group("op").lower(),
        right=_parse_term(match.group("right")),
        message=message,
    )


def split_constraints(constraints: Iterable[str]) -> Tuple[List[ConstraintRule], List[str]]:
    """Separate rule expressions from textual directives, preserving order."""

    rules: List[ConstraintRule] = []
    directives: List[str] = []
    for constraint in constraints:
        rule = parse_rule(constraint)
        if rule:
            rules.append(rule)
        elif constraint and constraint.strip():
            directives.append(constraint.strip())
    return rules, directives


def conflict_rules_from_config(entries: Iterable[Mapping[str, object]]) -> Tuple[ConstraintRule, ...]:
    """Build catalog-wide conflict rules from the ``conflicts`` config section."""

    rules: List[ConstraintRule] = []
    for entry in entries or []:
        message = entry.get("message")
        rule = parse_rule(str(entry.get("rule", "")), str(message) if message else None)
        if rule is None:
            raise ValueError(f"Invalid conflict rule: {entry.get('rule')!r}")
        rules.append(rule)
    return tuple(rules)


def evaluate(rules: Iterable[ConstraintRule], filters: Mapping[str, str], label: str) -> List[str]:
    return [f"{label}: {rule.describe()}" for rule in rules if rule.is_violated(filters)]
