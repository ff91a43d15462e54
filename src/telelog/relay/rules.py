"""Priority-ordered allow/deny rule engine for journal entries.

Rule groups are evaluated in ascending priority. At equal priority every
DENY group is evaluated before any ALLOW group. The first group whose rules
all match decides: DENY suppresses the entry, ALLOW lets it through. Entries
no group matches are let through.

Groups under ``filters.match`` are not evaluated here at all; they are pushed
down into the journal reader so non-matching entries are never read.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

import structlog

from telelog.config import FiltersConfig, RuleConfig, RuleGroups

from .entry import Entry, Field, FieldNotFoundError, canonical_field, native_field

log = structlog.get_logger()


class Action(Enum):
    """What a matching rule group does with the entry."""

    ALLOW = "allow"
    DENY = "deny"


class Logic(Enum):
    """How the patterns of a multi-value rule combine."""

    ANY = "any"
    ALL = "all"


@dataclass
class Rule:
    """A compiled field match."""

    field: Field | str
    patterns: list[re.Pattern]
    logic: Logic = Logic.ANY

    def matches(self, entry: Entry) -> bool:
        """Check this rule against an entry.

        An entry missing the field never matches; the lookup failure is
        logged and evaluation carries on.
        """
        try:
            value = entry.get_field(self.field)
        except FieldNotFoundError:
            log.error("Rule field not found on entry", field=_field_name(self.field))
            return False

        if self.logic is Logic.ALL:
            return all(p.search(value) for p in self.patterns)
        return any(p.search(value) for p in self.patterns)


@dataclass
class RuleGroup:
    """Rules that must all match for the group's action to apply."""

    priority: int
    action: Action
    rules: list[Rule] = field(default_factory=list)

    def matches(self, entry: Entry) -> bool:
        # An empty group (every rule dropped at compile time) decides nothing
        if not self.rules:
            return False
        return all(rule.matches(entry) for rule in self.rules)


class RuleSet:
    """Rule groups kept in evaluation order.

    Ordering: ascending priority; within a priority all DENY groups come
    before all ALLOW groups; otherwise insertion order.
    """

    def __init__(self) -> None:
        self._groups: list[RuleGroup] = []

    def __iter__(self) -> Iterator[RuleGroup]:
        return iter(self._groups)

    def __len__(self) -> int:
        return len(self._groups)

    def add(self, group: RuleGroup) -> None:
        """Insert a group at its evaluation position."""
        self._groups.insert(self._insert_index(group), group)

    def _insert_index(self, group: RuleGroup) -> int:
        for i, existing in enumerate(self._groups):
            if existing.priority > group.priority:
                return i
            if existing.priority < group.priority:
                continue
            # Same priority: a deny lands before the first allow, an allow
            # lands at the end of the run
            if group.action is Action.DENY and existing.action is Action.ALLOW:
                return i
        return len(self._groups)

    def first_match(self, entry: Entry) -> RuleGroup | None:
        for group in self._groups:
            if group.matches(entry):
                return group
        return None


class MatchTarget(Protocol):
    """The slice of ``systemd.journal.Reader`` used for match push-down."""

    def add_match(self, *args: str) -> None: ...

    def add_conjunction(self) -> None: ...

    def add_disjunction(self) -> None: ...


@dataclass
class NativeRule:
    field: str
    values: list[str]
    logic: Logic = Logic.ANY


@dataclass
class NativeMatchSpec:
    """Match groups to push down into the journal reader.

    Values of one rule join with AND/OR per the rule's logic, rules of a
    group join with AND, and groups join with OR.
    """

    groups: list[list[NativeRule]] = field(default_factory=list)

    def __bool__(self) -> bool:
        return any(self.groups)

    def apply(self, target: MatchTarget) -> None:
        """Install the matches on a journal reader."""
        groups = [g for g in self.groups if g]
        for gi, rules in enumerate(groups):
            for ri, rule in enumerate(rules):
                for vi, value in enumerate(rule.values):
                    target.add_match(f"{rule.field}={value}")
                    if vi < len(rule.values) - 1:
                        if rule.logic is Logic.ALL:
                            target.add_conjunction()
                        else:
                            target.add_disjunction()
                if ri < len(rules) - 1:
                    target.add_conjunction()
            if gi < len(groups) - 1:
                target.add_disjunction()
        log.info("Native journal matches applied", groups=len(groups))


def _field_name(f: Field | str) -> str:
    return f.value if isinstance(f, Field) else f


def compile_rule(config: RuleConfig) -> Rule | None:
    """Compile one configured rule.

    A single-value rule with a bad pattern is dropped entirely. For list
    values only the bad patterns are dropped; the rule is dropped if none
    compile.
    """
    values = [config.value] if isinstance(config.value, str) else config.value
    patterns: list[re.Pattern] = []
    for value in values:
        try:
            patterns.append(re.compile(value))
        except re.error as e:
            log.warning(
                "Dropping invalid rule pattern",
                field=config.field,
                pattern=value,
                error=str(e),
            )

    if not patterns:
        return None

    # Logic only matters for multi-value rules
    logic = Logic(config.logic) if isinstance(config.value, list) else Logic.ANY
    return Rule(field=canonical_field(config.field), patterns=patterns, logic=logic)


def compile_group(priority: int, action: Action, rules: list[RuleConfig]) -> RuleGroup:
    compiled = [r for r in (compile_rule(c) for c in rules) if r is not None]
    if len(compiled) < len(rules):
        log.warning(
            "Rule group lost rules to invalid patterns",
            priority=priority,
            action=action.value,
            kept=len(compiled),
            configured=len(rules),
        )
    return RuleGroup(priority=priority, action=action, rules=compiled)


def build_native_match(groups: RuleGroups) -> NativeMatchSpec:
    spec = NativeMatchSpec()
    for _priority, rules in groups.items():
        spec.groups.append(
            [
                NativeRule(
                    field=native_field(r.field),
                    values=[r.value] if isinstance(r.value, str) else list(r.value),
                    logic=Logic(r.logic),
                )
                for r in rules
            ]
        )
    return spec


class RuleEngine:
    """Compiled filters: an in-process rule set plus native journal matches."""

    def __init__(self, rule_set: RuleSet, native: NativeMatchSpec | None = None):
        self.rule_set = rule_set
        self.native = native or NativeMatchSpec()

    @classmethod
    def from_config(cls, filters: FiltersConfig) -> "RuleEngine":
        """Compile configured rule groups."""
        rule_set = RuleSet()
        for action, groups in ((Action.DENY, filters.deny), (Action.ALLOW, filters.allow)):
            for priority, rules in groups.items():
                rule_set.add(compile_group(priority, action, rules))

        engine = cls(rule_set, build_native_match(filters.match))
        log.info(
            "Rule engine built",
            groups=len(rule_set),
            native_groups=len(engine.native.groups),
        )
        return engine

    def should_suppress(self, entry: Entry) -> bool:
        """Return True if the entry should be dropped, False to relay it."""
        group = self.rule_set.first_match(entry)
        if group is None:
            return False
        return group.action is Action.DENY
