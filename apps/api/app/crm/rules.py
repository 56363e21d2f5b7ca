from __future__ import annotations

import math
import random
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Literal, Protocol

from app.crm.fields import FieldSource, is_blank, resolve_field_value


RuleOperator = Literal[
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "contains_any",
    "greater_than",
    "less_than",
    "in",
    "not_in",
    "is_empty",
    "is_not_empty",
    "older_than",
]
RuleValue = str | float | int | bool | list[str] | None

SCALAR_OPERATORS = frozenset({"equals", "not_equals", "contains", "not_contains"})
NUMERIC_OPERATORS = frozenset({"greater_than", "less_than", "older_than"})
LIST_OPERATORS = frozenset({"in", "not_in", "contains_any"})
UNARY_OPERATORS = frozenset({"is_empty", "is_not_empty"})

_SECONDS_PER_DAY = 86400


class ScoringRuleLike(Protocol):
    name: str
    field_key: str
    operator: str
    value: Any
    score_delta: int
    is_active: bool
    sort_order: int


class PriorityLike(Protocol):
    id: Any
    score_min: int | None
    score_max: int | None
    sort_order: int
    is_default: bool
    is_active: bool


class RoutingRuleLike(Protocol):
    priority: int
    conditions: list[dict[str, Any]]
    is_active: bool


@dataclass
class ScoreResult:
    total: int
    breakdown: dict[str, int] = field(default_factory=dict)
    raw_total: int = 0


def normalize_rule_value(operator: str, value: Any) -> RuleValue:
    """Validate ``value`` for ``operator`` and return its stored form.

    Raises ``ValueError`` so that pydantic validators can surface it directly.
    """
    if operator in UNARY_OPERATORS:
        return None
    if operator in NUMERIC_OPERATORS:
        number = _as_number(value)
        if number is None or not math.isfinite(number):
            raise ValueError(f"operator {operator} requires a numeric value")
        if operator == "older_than" and number < 0:
            raise ValueError("older_than requires a non-negative number of days")
        return int(number) if float(number).is_integer() else number
    if operator in LIST_OPERATORS:
        if isinstance(value, str):
            items = [item.strip() for item in value.split(",") if item.strip()]
        elif isinstance(value, (list, tuple)):
            items = [_as_text(item) for item in value if not is_blank(item)]
        else:
            raise ValueError(f"operator {operator} requires a list of values")
        if not items:
            raise ValueError(f"operator {operator} requires at least one value")
        return items
    if operator in SCALAR_OPERATORS:
        if isinstance(value, (list, tuple, dict)) or value is None:
            raise ValueError(f"operator {operator} requires a single value")
        if operator in {"contains", "not_contains"} and is_blank(value):
            raise ValueError(f"operator {operator} requires a non-empty value")
        if isinstance(value, Decimal):
            return float(value)
        return value
    raise ValueError(f"unsupported operator: {operator}")


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, (float, Decimal)):
        try:
            number = Decimal(str(value))
        except InvalidOperation:
            return str(value)
        if not number.is_finite():
            return str(value)
        if number == number.to_integral_value():
            return str(int(number))
        return format(number.normalize(), "f")
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(number):
        return None
    return number


def _as_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            try:
                parsed_date = date.fromisoformat(text)
            except ValueError:
                return None
            parsed = datetime(parsed_date.year, parsed_date.month, parsed_date.day)
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_collection(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


def _contains(actual: Any, expected: Any) -> bool:
    if _is_collection(actual):
        needle = _as_text(expected)
        return any(_as_text(item) == needle for item in actual)
    if is_blank(actual):
        return False
    return _as_text(expected) in _as_text(actual)


def _membership(actual: Any, expected: Any) -> bool:
    if not _is_collection(expected):
        return False
    allowed = {_as_text(item) for item in expected}
    if _is_collection(actual):
        return any(_as_text(item) in allowed for item in actual)
    return _as_text(actual) in allowed


def apply_operator(operator: str, actual: Any, expected: Any, *, now: datetime | None = None) -> bool:
    if operator == "equals":
        return _as_text(actual) == _as_text(expected)
    if operator == "not_equals":
        return _as_text(actual) != _as_text(expected)
    if operator == "contains":
        return _contains(actual, expected)
    if operator == "not_contains":
        return not _contains(actual, expected)
    if operator == "contains_any":
        if not _is_collection(expected):
            return False
        return any(_contains(actual, item) for item in expected)
    if operator in {"greater_than", "less_than"}:
        left = _as_number(actual)
        right = _as_number(expected)
        if left is None or right is None:
            return False
        return left > right if operator == "greater_than" else left < right
    if operator == "in":
        return _membership(actual, expected)
    if operator == "not_in":
        return not _membership(actual, expected)
    if operator == "is_empty":
        return is_blank(actual)
    if operator == "is_not_empty":
        return not is_blank(actual)
    if operator == "older_than":
        # a record with no timestamp at all counts as stale
        if is_blank(actual):
            return True
        moment = _as_timestamp(actual)
        threshold = _as_number(expected)
        if moment is None or threshold is None:
            return False
        reference = now or datetime.now(timezone.utc)
        return (reference - moment).total_seconds() / _SECONDS_PER_DAY > threshold
    return False


def evaluate_template(
    max_score: int,
    rules: Iterable[ScoringRuleLike],
    source: FieldSource,
    *,
    now: datetime | None = None,
) -> ScoreResult:
    """Sum the deltas of every firing active rule, clamping only the final total."""
    reference = now or datetime.now(timezone.utc)
    ordered = sorted(rules, key=lambda rule: (rule.sort_order or 0, rule.name))
    total = 0
    breakdown: dict[str, int] = {}
    for rule in ordered:
        if not rule.is_active:
            continue
        actual = resolve_field_value(source, rule.field_key)
        if apply_operator(rule.operator, actual, rule.value, now=reference):
            total += rule.score_delta
            breakdown[rule.name] = rule.score_delta
    ceiling = max(int(max_score), 0)
    return ScoreResult(total=max(0, min(total, ceiling)), breakdown=breakdown, raw_total=total)


def _range_contains(priority: PriorityLike, score: int) -> bool:
    if priority.score_min is not None and score < priority.score_min:
        return False
    if priority.score_max is not None and score > priority.score_max:
        return False
    return True


def _range_width(priority: PriorityLike) -> float:
    if priority.score_min is None or priority.score_max is None:
        return math.inf
    return float(priority.score_max - priority.score_min)


def select_priority(priorities: Sequence[PriorityLike], score: int) -> PriorityLike | None:
    active = [item for item in priorities if item.is_active]
    candidates = [item for item in active if _range_contains(item, score)]
    if candidates:
        return min(candidates, key=lambda item: (_range_width(item), item.sort_order, str(item.id)))
    defaults = sorted((item for item in active if item.is_default), key=lambda item: (item.sort_order, str(item.id)))
    return defaults[0] if defaults else None


def conditions_match(conditions: Iterable[dict[str, Any]], source: FieldSource, *, now: datetime | None = None) -> bool:
    for condition in conditions:
        actual = resolve_field_value(source, str(condition.get("field", "")))
        if not apply_operator(str(condition.get("operator", "")), actual, condition.get("value"), now=now):
            return False
    return True


def match_routing_rule(
    rules: Sequence[RoutingRuleLike],
    source: FieldSource,
    *,
    now: datetime | None = None,
) -> RoutingRuleLike | None:
    # sorted() is stable, so rules sharing a priority keep the caller's order
    for rule in sorted(rules, key=lambda item: item.priority):
        if not rule.is_active:
            continue
        if conditions_match(rule.conditions or [], source, now=now):
            return rule
    return None


def pick_weighted(entries: Sequence[dict[str, Any]], rng: random.Random | None = None) -> str:
    weighted = [(str(entry["id"]), max(int(entry.get("weight") or 0), 0)) for entry in entries]
    total = sum(weight for _, weight in weighted)
    if total <= 0:
        raise ValueError("weighted assignment needs at least one positive weight")
    point = (rng or random).uniform(0, total)
    cumulative = 0
    for entry_id, weight in weighted:
        cumulative += weight
        if point <= cumulative and weight > 0:
            return entry_id
    return next(entry_id for entry_id, weight in reversed(weighted) if weight > 0)
