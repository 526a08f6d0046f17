"""Closed condition language of billing rules.

A rule predicate is a conjunction of ``Condition`` clauses. Each clause
reads one field of a closed set (line item fields for line-scope rules,
case aggregate fields for both scopes) and compares it with one of a fixed
set of operators. Anything outside those sets is a ``ConditionError``.
"""

from dataclasses import dataclass
from decimal import Decimal
from operator import eq, ge, gt, le, lt, ne
from typing import Any, Dict, Iterable, Optional

from app.core.v1.amounts import to_decimal
from app.core.v1.models import Condition, LineItem, RuleScope

NUMERIC = "numeric"
TEXT = "text"

LINE_FIELDS: Dict[str, str] = {
    "code": TEXT,
    "description": TEXT,
    "quantity": NUMERIC,
    "unit_price": NUMERIC,
    "subtotal": NUMERIC,
}

CASE_FIELDS: Dict[str, str] = {
    "total_billed": NUMERIC,
    "contracted_value": NUMERIC,
    "eps": TEXT,
    "nit": TEXT,
    "range": NUMERIC,
    "line_count": NUMERIC,
    "document_count": NUMERIC,
    "failed_document_count": NUMERIC,
    "attention_type": TEXT,
    "invoice_number": TEXT,
}

ALL_FIELDS: Dict[str, str] = {**CASE_FIELDS, **LINE_FIELDS}

NUMERIC_OPERATORS = frozenset({"lt", "lte", "gt", "gte", "between"})
OPERATORS = frozenset({"eq", "ne", "contains", "in", "exists", "not_exists"}) | NUMERIC_OPERATORS

_COMPARISONS = {"eq": eq, "ne": ne, "lt": lt, "lte": le, "gt": gt, "gte": ge}


class ConditionError(ValueError):
    """A condition that cannot be evaluated."""


@dataclass(frozen=True)
class CaseAggregate:
    """Case level values visible to rule conditions."""

    case_id: str
    eps: str
    nit: str
    range: int
    total_billed: Decimal
    contracted_value: Optional[Decimal]
    line_count: int
    document_count: int
    failed_document_count: int
    attention_type: Optional[str] = None
    invoice_number: Optional[str] = None

    def field_value(self, name: str) -> Any:
        return getattr(self, name)


def fields_for(scope: RuleScope) -> Dict[str, str]:
    if scope == RuleScope.LINE:
        return {**CASE_FIELDS, **LINE_FIELDS}
    return dict(CASE_FIELDS)


def validate_condition(condition: Condition, scope: RuleScope):
    """Check a clause is well formed for the rule scope.

    Raises:
        ConditionError: On an unknown field or operator, or an operand that
            does not fit the operator.
    """
    fields = fields_for(scope)
    if condition.field not in fields:
        raise ConditionError(f"unknown field '{condition.field}' for {scope.value} rules")
    if condition.operator not in OPERATORS:
        raise ConditionError(f"unknown operator '{condition.operator}'")

    kind = fields[condition.field]
    operator = condition.operator

    if operator in ("exists", "not_exists"):
        return
    if operator in NUMERIC_OPERATORS and kind != NUMERIC:
        raise ConditionError(f"operator '{operator}' needs a numeric field, '{condition.field}' is text")
    if operator == "contains" and kind != TEXT:
        raise ConditionError(f"operator 'contains' needs a text field, '{condition.field}' is numeric")

    if operator == "in":
        if not isinstance(condition.value, (list, tuple)) or not condition.value:
            raise ConditionError("operator 'in' needs a non empty list")
        operands: Iterable[Any] = condition.value
    elif operator == "between":
        if condition.value is None or condition.value_max is None:
            raise ConditionError("operator 'between' needs value and value_max")
        operands = (condition.value, condition.value_max)
    else:
        if condition.value is None:
            raise ConditionError(f"operator '{operator}' needs a value")
        operands = (condition.value,)

    if kind == NUMERIC:
        for operand in operands:
            try:
                to_decimal(operand)
            except ValueError as err:
                raise ConditionError(f"field '{condition.field}' compares numbers: {err}") from err


def _read(condition: Condition, line_item: Optional[LineItem], aggregate: CaseAggregate) -> Any:
    if condition.field in LINE_FIELDS:
        if line_item is None:
            raise ConditionError(f"field '{condition.field}' is only available to line rules")
        return getattr(line_item, condition.field)
    return aggregate.field_value(condition.field)


def _text(value: Any) -> str:
    return str(value).strip().lower()


def evaluate_condition(condition: Condition, line_item: Optional[LineItem], aggregate: CaseAggregate) -> bool:
    """Evaluate one clause; ``validate_condition`` must have accepted it."""
    actual = _read(condition, line_item, aggregate)
    operator = condition.operator

    if operator == "exists":
        return actual is not None and _text(actual) != ""
    if operator == "not_exists":
        return actual is None or _text(actual) == ""
    if actual is None:
        return False

    if ALL_FIELDS[condition.field] == NUMERIC:
        actual = to_decimal(actual)
        if operator == "in":
            return any(actual == to_decimal(item) for item in condition.value)
        if operator == "between":
            return to_decimal(condition.value) <= actual <= to_decimal(condition.value_max)
        expected = to_decimal(condition.value)
        return _COMPARISONS[operator](actual, expected)

    actual = _text(actual)
    if operator == "in":
        return actual in {_text(item) for item in condition.value}
    if operator == "contains":
        return _text(condition.value) in actual
    if operator == "eq":
        return actual == _text(condition.value)
    if operator == "ne":
        return actual != _text(condition.value)
    raise ConditionError(f"operator '{operator}' is not valid for text field '{condition.field}'")


def matches_all(conditions: Iterable[Condition], line_item: Optional[LineItem], aggregate: CaseAggregate) -> bool:
    return all(evaluate_condition(condition, line_item, aggregate) for condition in conditions)
