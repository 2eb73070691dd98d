"""Trigger evaluation for a single alert rule against one observed price.

``evaluate`` is pure: it never touches the rule it is given and always
returns a fresh state mapping that the caller persists.

Known limitation: the percent-change kinds compare against the price seen on
the previous evaluation, so the measured change is tick-over-tick rather
than anchored to a fixed window. Changing that alters when alerts fire.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from .rules import AlertRule, StateValue

State = dict[str, StateValue]


@dataclass(frozen=True)
class EvaluationResult:
    triggered: bool
    reason: str
    state: State = field(default_factory=dict)


def format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.8f}".rstrip("0").rstrip(".")


def in_cooldown(rule: AlertRule, now: float) -> bool:
    if rule.last_triggered_at is None:
        return False
    return now - rule.last_triggered_at < rule.cooldown_sec


def _evaluate_cross_up(rule: AlertRule, price: float, state: State) -> EvaluationResult:
    is_above = price >= rule.threshold
    previous = state.get("was_above")
    was_above = is_above if previous is None else bool(previous)
    state["was_above"] = is_above
    if not was_above and is_above:
        reason = f"cross_up: {format_number(price)} crossed above {format_number(rule.threshold)}"
        return EvaluationResult(True, reason, state)
    return EvaluationResult(False, "no condition met", state)


def _evaluate_cross_down(rule: AlertRule, price: float, state: State) -> EvaluationResult:
    is_below = price <= rule.threshold
    previous = state.get("was_below")
    was_below = is_below if previous is None else bool(previous)
    state["was_below"] = is_below
    if not was_below and is_below:
        reason = f"cross_down: {format_number(price)} crossed below {format_number(rule.threshold)}"
        return EvaluationResult(True, reason, state)
    return EvaluationResult(False, "no condition met", state)


def _evaluate_price_gte(rule: AlertRule, price: float, state: State) -> EvaluationResult:
    if price >= rule.threshold:
        return EvaluationResult(
            True,
            f"price_gte: {format_number(price)} >= {format_number(rule.threshold)}",
            state,
        )
    return EvaluationResult(False, "no condition met", state)


def _evaluate_price_lte(rule: AlertRule, price: float, state: State) -> EvaluationResult:
    if price <= rule.threshold:
        return EvaluationResult(
            True,
            f"price_lte: {format_number(price)} <= {format_number(rule.threshold)}",
            state,
        )
    return EvaluationResult(False, "no condition met", state)


def _pct_change(state: State, price: float) -> float | None:
    base = state.get("base_price")
    if base is None or isinstance(base, bool):
        return None
    try:
        base_price = float(base)
    except (TypeError, ValueError):
        return None
    if base_price <= 0:
        return None
    return (price - base_price) / base_price * 100.0


def _evaluate_pct_change_up(rule: AlertRule, price: float, state: State) -> EvaluationResult:
    change = _pct_change(state, price)
    state["base_price"] = price
    if change is not None and change >= rule.threshold:
        reason = f"pct_change_up: {change:.2f}% >= {format_number(rule.threshold)}%"
        return EvaluationResult(True, reason, state)
    return EvaluationResult(False, "no condition met", state)


def _evaluate_pct_change_down(rule: AlertRule, price: float, state: State) -> EvaluationResult:
    change = _pct_change(state, price)
    state["base_price"] = price
    if change is not None and change <= -rule.threshold:
        reason = f"pct_change_down: {change:.2f}% <= -{format_number(rule.threshold)}%"
        return EvaluationResult(True, reason, state)
    return EvaluationResult(False, "no condition met", state)


_EVALUATORS: dict[str, Callable[[AlertRule, float, State], EvaluationResult]] = {
    "cross_up": _evaluate_cross_up,
    "cross_down": _evaluate_cross_down,
    "price_gte": _evaluate_price_gte,
    "price_lte": _evaluate_price_lte,
    "pct_change_up": _evaluate_pct_change_up,
    "pct_change_down": _evaluate_pct_change_down,
}


def evaluate(rule: AlertRule, now: float, price: float) -> EvaluationResult:
    """Decide whether ``rule`` fires at ``now`` for the observed ``price``."""
    if in_cooldown(rule, now):
        return EvaluationResult(False, "cooldown", dict(rule.last_state))
    handler = _EVALUATORS.get(rule.condition_type)
    if handler is None:
        return EvaluationResult(False, "unsupported condition", dict(rule.last_state))
    return handler(rule, float(price), dict(rule.last_state))

