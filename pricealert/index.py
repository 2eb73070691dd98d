from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Literal

from .rules import AlertRule, StateValue

ChangeAction = Literal["upsert", "update", "delete"]
CHANGE_ACTIONS: tuple[str, ...] = ("upsert", "update", "delete")


@dataclass(frozen=True, order=True)
class GroupKey:
    symbol: str
    interval: int

    def __str__(self) -> str:
        return f"{self.symbol}:{self.interval}"


@dataclass
class AlertGroup:
    key: GroupKey
    alert_ids: set[str] = field(default_factory=set)
    next_run_at: float = 0.0

    @property
    def symbol(self) -> str:
        return self.key.symbol

    @property
    def interval(self) -> int:
        return self.key.interval


def group_key_for(rule: AlertRule) -> GroupKey:
    return GroupKey(symbol=rule.symbol, interval=int(rule.poll_interval_sec))


def _carry_runtime(previous: AlertRule, incoming: AlertRule) -> AlertRule:
    """Keep runtime fields the index has seen but the incoming row may lack.

    The index records a tick's outcome before it is persisted, so a row read
    mid-persistence can be older than the indexed rule. The later trigger time
    wins, and state survives unless the watched condition changed.
    """
    last_triggered_at = incoming.last_triggered_at
    if previous.last_triggered_at is not None and (
        last_triggered_at is None or previous.last_triggered_at > last_triggered_at
    ):
        last_triggered_at = previous.last_triggered_at
    last_state = incoming.last_state
    if (previous.symbol, previous.condition_type, previous.threshold) == (
        incoming.symbol,
        incoming.condition_type,
        incoming.threshold,
    ):
        last_state = previous.last_state
    return incoming.with_runtime(last_state=last_state, last_triggered_at=last_triggered_at)


class AlertIndex:
    """In-memory indexes derived from the enabled rules in the store.

    Only enabled rules are indexed. Every indexed rule belongs to exactly one
    group; a group exists only while it has at least one rule.
    """

    def __init__(self) -> None:
        self._logger = logging.getLogger("pricealert.index")
        self._rules_by_id: dict[str, AlertRule] = {}
        self._rule_ids_by_symbol: dict[str, set[str]] = {}
        self._groups: dict[GroupKey, AlertGroup] = {}

    @property
    def rule_count(self) -> int:
        return len(self._rules_by_id)

    @property
    def group_count(self) -> int:
        return len(self._groups)

    def get_rule(self, rule_id: str) -> AlertRule | None:
        return self._rules_by_id.get(rule_id)

    def get_group(self, key: GroupKey) -> AlertGroup | None:
        return self._groups.get(key)

    def groups(self) -> list[AlertGroup]:
        return list(self._groups.values())

    def rule_ids_for_symbol(self, symbol: str) -> set[str]:
        return set(self._rule_ids_by_symbol.get(symbol, set()))

    def rebuild(self, rules: Iterable[AlertRule], now: float) -> None:
        self._rules_by_id.clear()
        self._rule_ids_by_symbol.clear()
        self._groups.clear()
        for rule in rules:
            if not rule.is_enabled:
                continue
            self._insert(rule, now)
        self._logger.info(
            "rebuilt alert index rules=%s groups=%s",
            len(self._rules_by_id),
            len(self._groups),
        )

    def apply_change(self, action: str, rule: AlertRule, now: float) -> None:
        if action not in CHANGE_ACTIONS:
            raise ValueError(f"unsupported change action: {action}")
        previous = self._rules_by_id.get(rule.id)
        if action == "delete" or not rule.is_enabled:
            if previous is not None:
                self._remove(previous)
            return
        if previous is not None:
            rule = _carry_runtime(previous, rule)
            if group_key_for(previous) != group_key_for(rule):
                self._remove(previous)
        self._insert(rule, now)

    def due_groups(self, now: float) -> list[AlertGroup]:
        return [group for group in self._groups.values() if group.next_run_at <= now]

    def advance(self, key: GroupKey, now: float) -> None:
        group = self._groups.get(key)
        if group is not None:
            group.next_run_at = now + group.interval

    def group_rules(self, key: GroupKey) -> list[AlertRule]:
        group = self._groups.get(key)
        if group is None:
            return []
        rules: list[AlertRule] = []
        for alert_id in sorted(group.alert_ids):
            rule = self._rules_by_id.get(alert_id)
            if rule is None:
                self._logger.error(
                    "dangling alert id in group; dropping alert_id=%s group=%s",
                    alert_id,
                    key,
                )
                self._discard_from_group(key, alert_id)
                continue
            if rule.is_enabled:
                rules.append(rule)
        return rules

    def record_runtime(
        self,
        rule_id: str,
        *,
        last_state: dict[str, StateValue],
        last_triggered_at: int | None,
    ) -> AlertRule | None:
        rule = self._rules_by_id.get(rule_id)
        if rule is None:
            return None
        updated = rule.with_runtime(last_state=last_state, last_triggered_at=last_triggered_at)
        self._rules_by_id[rule_id] = updated
        return updated

    def _insert(self, rule: AlertRule, now: float) -> None:
        self._rules_by_id[rule.id] = rule
        self._rule_ids_by_symbol.setdefault(rule.symbol, set()).add(rule.id)
        key = group_key_for(rule)
        group = self._groups.get(key)
        if group is None:
            group = AlertGroup(key=key, next_run_at=now + key.interval)
            self._groups[key] = group
        group.alert_ids.add(rule.id)

    def _remove(self, rule: AlertRule) -> None:
        self._rules_by_id.pop(rule.id, None)
        symbol_ids = self._rule_ids_by_symbol.get(rule.symbol)
        if symbol_ids is not None:
            symbol_ids.discard(rule.id)
            if not symbol_ids:
                del self._rule_ids_by_symbol[rule.symbol]
        self._discard_from_group(group_key_for(rule), rule.id)

    def _discard_from_group(self, key: GroupKey, rule_id: str) -> None:
        group = self._groups.get(key)
        if group is None:
            return
        group.alert_ids.discard(rule_id)
        if not group.alert_ids:
            del self._groups[key]
