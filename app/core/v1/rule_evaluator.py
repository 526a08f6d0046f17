"""Glosa engine: applies a rule snapshot to the line items of a case.

Evaluation order is a total order on ``(priority, rule_id, version)``;
line-scope rules run item by item in document order, then case-scope
rules run once against the case aggregate. Rules are cumulative: every
matching rule contributes a glosa computed from the original subtotal (or
original case total), except that a ``disallow`` outcome ends evaluation
for its item. The zero floor on the payable amount is not applied here.
"""

from decimal import Decimal
from typing import Dict, Optional, Sequence, Tuple

from app.core.v1.amounts import ZERO, quantize_amount, to_decimal
from app.core.v1.exceptions import RuleEvaluationError
from app.core.v1.log_manager import LogManager
from app.core.v1.models import (
    AppliedRule,
    DeductionKind,
    EvaluationOutcome,
    Glosa,
    LineItem,
    Rule,
    RuleScope,
)
from app.core.v1.rule_conditions import CaseAggregate, ConditionError, matches_all, validate_condition

CAP_SOURCES = ("contracted_value",)
HUNDRED = Decimal("100")


def check_rule(rule: Rule):
    """Check the conditions and deduction parameters of a rule.

    Raises:
        ConditionError: If the rule cannot be evaluated.
    """
    for condition in rule.conditions:
        validate_condition(condition, rule.scope)

    deduction = rule.deduction
    if deduction.kind == DeductionKind.FIXED:
        if deduction.amount is None or deduction.amount < 0:
            raise ConditionError("fixed deduction needs a non negative amount")
    elif deduction.kind == DeductionKind.PERCENTAGE:
        if deduction.percentage is None or not ZERO <= deduction.percentage <= HUNDRED:
            raise ConditionError("percentage deduction needs a percentage between 0 and 100")
    elif deduction.kind == DeductionKind.CAP:
        if deduction.cap_source is not None and deduction.cap_source not in CAP_SOURCES:
            raise ConditionError(f"unknown cap source '{deduction.cap_source}'")
        if deduction.cap_source is None and (deduction.cap is None or deduction.cap < 0):
            raise ConditionError("cap deduction needs a non negative cap or a cap source")
        if deduction.per_unit and rule.scope == RuleScope.CASE:
            raise ConditionError("per unit caps only apply to line rules")


class SkipRule(Exception):
    """Rule cannot apply to this case; reported as a message, not an error."""


class GlosaEngine:
    """Evaluates rules and produces glosas."""

    def __init__(self, logger: Optional[LogManager] = None):
        self.logger = logger or LogManager(__name__)

    def evaluate(
        self,
        line_items: Sequence[LineItem],
        aggregate: CaseAggregate,
        rule_snapshot: Sequence[Rule]
    ) -> EvaluationOutcome:
        """Evaluate a rule snapshot.

        Args:
            line_items (Sequence[LineItem]): Items in document order.
            aggregate (CaseAggregate): Case level values.
            rule_snapshot (Sequence[Rule]): Rules captured at run start.

        Returns:
            EvaluationOutcome: Glosas and applied rules in evaluation order.

        Raises:
            RuleEvaluationError: If any applicable rule is malformed. Nothing
                is evaluated in that case.
        """
        rules = sorted(
            (rule for rule in rule_snapshot if rule.active and rule.applies_to(aggregate.range, aggregate.eps)),
            key=lambda rule: rule.sort_key
        )
        for rule in rules:
            self._validate(rule)

        outcome = EvaluationOutcome(rules_evaluated=len(rules))
        applied: Dict[Tuple[str, int], AppliedRule] = {}
        skipped = set()

        line_rules = [rule for rule in rules if rule.scope == RuleScope.LINE]
        case_rules = [rule for rule in rules if rule.scope == RuleScope.CASE]

        line_glosa_total = ZERO
        for item in line_items:
            deducted = ZERO
            for rule in line_rules:
                if (rule.rule_id, rule.version) in skipped:
                    continue
                if not self._matches(rule, item, aggregate):
                    continue
                try:
                    amount, detail = self._line_deduction(rule, item, aggregate, deducted)
                except SkipRule as reason:
                    skipped.add((rule.rule_id, rule.version))
                    outcome.messages.append(str(reason))
                    continue

                self._record(outcome, applied, rule, aggregate.case_id, item.line_item_id, amount, detail)
                deducted += amount
                if rule.deduction.kind == DeductionKind.DISALLOW:
                    break
            line_glosa_total += deducted

        case_deducted = ZERO
        for rule in case_rules:
            if not self._matches(rule, None, aggregate):
                continue
            try:
                amount, detail = self._case_deduction(rule, aggregate, line_glosa_total + case_deducted)
            except SkipRule as reason:
                outcome.messages.append(str(reason))
                continue

            self._record(outcome, applied, rule, aggregate.case_id, None, amount, detail)
            case_deducted += amount
            if rule.deduction.kind == DeductionKind.DISALLOW:
                break

        outcome.rules_applied = [
            applied[(rule.rule_id, rule.version)] for rule in rules if (rule.rule_id, rule.version) in applied
        ]
        self.logger.info(
            "Rule evaluation completed",
            case_id=aggregate.case_id,
            rules_evaluated=len(rules),
            rules_applied=len(outcome.rules_applied),
            glosas=len(outcome.glosas)
        )
        return outcome

    def _validate(self, rule: Rule):
        try:
            check_rule(rule)
        except ConditionError as err:
            message = f"La regla {rule.rule_id} v{rule.version} ('{rule.label}') es inválida: {err}"
            self.logger.error("Malformed rule", rule_id=rule.rule_id, version=rule.version, error=str(err))
            raise RuleEvaluationError(message, [message], rule_id=rule.rule_id, rule_version=rule.version) from err

    def _matches(self, rule: Rule, item: Optional[LineItem], aggregate: CaseAggregate) -> bool:
        try:
            return matches_all(rule.conditions, item, aggregate)
        except (ConditionError, ValueError, ArithmeticError) as err:
            message = f"La regla {rule.rule_id} v{rule.version} no pudo evaluarse: {err}"
            raise RuleEvaluationError(message, [message], rule_id=rule.rule_id, rule_version=rule.version) from err

    def _cap(self, rule: Rule, aggregate: CaseAggregate) -> Decimal:
        if rule.deduction.cap_source == "contracted_value":
            if aggregate.contracted_value is None:
                raise SkipRule(
                    f"La regla {rule.rule_id} v{rule.version} no se aplicó: el caso no tiene valor contratado"
                )
            return to_decimal(aggregate.contracted_value)
        return rule.deduction.cap

    def _line_deduction(
        self,
        rule: Rule,
        item: LineItem,
        aggregate: CaseAggregate,
        deducted: Decimal
    ) -> Tuple[Decimal, str]:
        deduction = rule.deduction
        subtotal = item.subtotal

        if deduction.kind == DeductionKind.FIXED:
            amount = deduction.amount * item.quantity if deduction.per_unit else deduction.amount
            detail = f"deducción fija de {quantize_amount(amount)}"
        elif deduction.kind == DeductionKind.PERCENTAGE:
            amount = subtotal * deduction.percentage / HUNDRED
            detail = f"{deduction.percentage}% de {subtotal}"
        elif deduction.kind == DeductionKind.DISALLOW:
            amount = max(ZERO, subtotal - deducted)
            detail = f"ítem no reconocido, valor facturado {subtotal}"
        else:
            cap = self._cap(rule, aggregate)
            if deduction.per_unit:
                amount = max(ZERO, item.unit_price - cap) * item.quantity
                detail = f"valor unitario {item.unit_price} supera el tope {quantize_amount(cap)}"
            else:
                amount = max(ZERO, subtotal - cap)
                detail = f"valor facturado {subtotal} supera el tope {quantize_amount(cap)}"

        return quantize_amount(amount), detail

    def _case_deduction(self, rule: Rule, aggregate: CaseAggregate, deducted: Decimal) -> Tuple[Decimal, str]:
        deduction = rule.deduction
        total = aggregate.total_billed

        if deduction.kind == DeductionKind.FIXED:
            amount = deduction.amount
            detail = f"deducción fija de {quantize_amount(amount)} sobre el caso"
        elif deduction.kind == DeductionKind.PERCENTAGE:
            amount = total * deduction.percentage / HUNDRED
            detail = f"{deduction.percentage}% del total facturado {total}"
        elif deduction.kind == DeductionKind.DISALLOW:
            amount = max(ZERO, total - deducted)
            detail = f"cuenta no reconocida, total facturado {total}"
        else:
            cap = self._cap(rule, aggregate)
            amount = max(ZERO, total - cap)
            detail = f"total facturado {total} supera el tope {quantize_amount(cap)}"

        return quantize_amount(amount), detail

    def _record(
        self,
        outcome: EvaluationOutcome,
        applied: Dict[Tuple[str, int], AppliedRule],
        rule: Rule,
        case_id: str,
        line_item_id: Optional[str],
        amount: Decimal,
        detail: str
    ):
        key = (rule.rule_id, rule.version)
        if key not in applied:
            applied[key] = AppliedRule(
                rule_id=rule.rule_id,
                rule_version=rule.version,
                label=rule.label,
                scope=rule.scope,
                deduction_kind=rule.deduction.kind
            )
        entry = applied[key]
        entry.matches += 1
        entry.amount = quantize_amount(entry.amount + amount)

        if amount <= ZERO:
            return
        outcome.glosas.append(
            Glosa(
                case_id=case_id,
                line_item_id=line_item_id,
                rule_id=rule.rule_id,
                rule_version=rule.version,
                glosa_code=rule.glosa_code,
                amount=amount,
                justification=f"{rule.label}: {detail}"
            )
        )
        self.logger.debug(
            "Glosa produced",
            rule_id=rule.rule_id,
            line_item_id=line_item_id,
            amount=str(amount)
        )
