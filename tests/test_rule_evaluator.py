"""
Tests para el motor de glosas y el lenguaje de condiciones.
"""

import random
from dataclasses import replace
from decimal import Decimal, InvalidOperation
from unittest.mock import patch

import pytest

from app.core.v1.exceptions import RuleEvaluationError
from app.core.v1.models import Condition, Rule, RuleScope
from app.core.v1.rule_conditions import ConditionError, evaluate_condition, validate_condition
from app.core.v1.rule_evaluator import GlosaEngine, check_rule

from utils import make_aggregate, make_item, rule_data


def make_rule(rule_id: str = "REGLA-1", version: int = 1, **overrides) -> Rule:
    return Rule(version=version, **rule_data(rule_id, **overrides))


@pytest.fixture
def engine():
    return GlosaEngine()


@pytest.fixture
def items():
    return [
        make_item(1, "890201", "1", "90000"),
        make_item(2, "903841", "2", "12500"),
        make_item(3, "19101", "1", "300000"),
    ]


@pytest.fixture
def aggregate(items):
    return make_aggregate(
        total_billed=sum((item.subtotal for item in items), Decimal("0.00")),
        line_count=len(items),
        range=2
    )


class TestConditions:
    """Tests del lenguaje cerrado de condiciones."""

    def test_text_operators_ignore_case(self, items, aggregate):
        """Test de eq, contains e in sobre campos de texto."""
        item = items[0]
        assert evaluate_condition(Condition(field="code", operator="eq", value="890201"), item, aggregate)
        assert evaluate_condition(Condition(field="description", operator="contains", value="servicio"), item, aggregate)
        assert evaluate_condition(Condition(field="eps", operator="in", value=["eps sura", "Nueva EPS"]), item, aggregate)
        assert not evaluate_condition(Condition(field="code", operator="ne", value="890201"), item, aggregate)

    def test_numeric_operators(self, items, aggregate):
        """Test de comparaciones numéricas con Decimal."""
        item = items[1]
        assert evaluate_condition(Condition(field="subtotal", operator="gte", value="25000"), item, aggregate)
        assert evaluate_condition(Condition(field="quantity", operator="gt", value=1), item, aggregate)
        assert evaluate_condition(
            Condition(field="unit_price", operator="between", value="10000", value_max="12500"), item, aggregate
        )
        assert not evaluate_condition(Condition(field="subtotal", operator="lt", value="25000"), item, aggregate)

    def test_exists_on_missing_contracted_value(self, items, aggregate):
        """Test de exists y not_exists sobre el valor contratado."""
        assert evaluate_condition(Condition(field="contracted_value", operator="not_exists"), items[0], aggregate)
        assert not evaluate_condition(Condition(field="contracted_value", operator="exists"), items[0], aggregate)

    def test_attention_type_and_invoice_number(self, items):
        """Test que el tipo de atención y el número de factura del caso son visibles a las reglas."""
        aggregate = make_aggregate(attention_type="Urgencias", invoice_number="FE-10023")

        assert evaluate_condition(Condition(field="attention_type", operator="eq", value="urgencias"), None, aggregate)
        assert evaluate_condition(Condition(field="invoice_number", operator="contains", value="fe-"), items[0], aggregate)
        assert evaluate_condition(Condition(field="attention_type", operator="not_exists"), None, make_aggregate())

    @pytest.mark.parametrize("condition,scope", [
        (Condition(field="patient_name", operator="eq", value="x"), RuleScope.LINE),
        (Condition(field="code", operator="regex", value=".*"), RuleScope.LINE),
        (Condition(field="code", operator="eq", value="890201"), RuleScope.CASE),
        (Condition(field="code", operator="gt", value="1"), RuleScope.LINE),
        (Condition(field="subtotal", operator="contains", value="1"), RuleScope.LINE),
        (Condition(field="subtotal", operator="gt", value="mucho"), RuleScope.LINE),
        (Condition(field="subtotal", operator="gt", value="NaN"), RuleScope.LINE),
        (Condition(field="attention_type", operator="gt", value="1"), RuleScope.CASE),
        (Condition(field="subtotal", operator="between", value="1"), RuleScope.LINE),
        (Condition(field="code", operator="in", value=[]), RuleScope.LINE),
    ])
    def test_malformed_conditions(self, condition, scope):
        """Test que condiciones fuera del lenguaje se rechazan."""
        with pytest.raises(ConditionError):
            validate_condition(condition, scope)


class TestCheckRule:
    """Tests de validación de parámetros de deducción."""

    @pytest.mark.parametrize("deduction", [
        {"kind": "fixed"},
        {"kind": "percentage", "percentage": "120"},
        {"kind": "cap"},
        {"kind": "cap", "cap_source": "tarifa_soat"},
    ])
    def test_invalid_deductions(self, deduction):
        """Test que deducciones incompletas se rechazan."""
        with pytest.raises(ConditionError):
            check_rule(make_rule(deduction=deduction))

    def test_per_unit_cap_needs_line_scope(self):
        """Test que el tope por unidad solo aplica a reglas de ítem."""
        with pytest.raises(ConditionError):
            check_rule(make_rule(scope="case", deduction={"kind": "cap", "cap": "10", "per_unit": True}))


class TestGlosaEngine:
    """Tests de evaluación de reglas."""

    def test_no_rules_no_glosas(self, engine, items, aggregate):
        """Test que sin reglas no hay glosas."""
        outcome = engine.evaluate(items, aggregate, ())

        assert outcome.glosas == []
        assert outcome.rules_applied == []
        assert outcome.rules_evaluated == 0

    def test_fixed_deduction_on_matching_items(self, engine, items, aggregate):
        """Test de deducción fija por ítem que cumple la condición."""
        rule = make_rule(
            conditions=[{"field": "code", "operator": "in", "value": ["890201", "903841"]}],
            deduction={"kind": "fixed", "amount": "5000"},
            glosa_code="FA0101"
        )
        outcome = engine.evaluate(items, aggregate, (rule,))

        assert [glosa.line_item_id for glosa in outcome.glosas] == ["doc-1:1", "doc-1:2"]
        assert all(glosa.amount == Decimal("5000.00") for glosa in outcome.glosas)
        assert outcome.glosas[0].glosa_code == "FA0101"
        assert outcome.glosas[0].justification.startswith("Regla REGLA-1: ")
        assert outcome.rules_applied[0].matches == 2
        assert outcome.rules_applied[0].amount == Decimal("10000.00")

    def test_fixed_per_unit(self, engine, items, aggregate):
        """Test de deducción fija multiplicada por la cantidad."""
        rule = make_rule(
            conditions=[{"field": "code", "operator": "eq", "value": "903841"}],
            deduction={"kind": "fixed", "amount": "1000", "per_unit": True}
        )
        outcome = engine.evaluate(items, aggregate, (rule,))

        assert outcome.glosas[0].amount == Decimal("2000.00")

    def test_percentage_rounds_half_up(self, engine, aggregate):
        """Test de porcentaje sobre el subtotal original con redondeo a centavos."""
        item = make_item(1, "890201", "1", "100.05")
        rule = make_rule(deduction={"kind": "percentage", "percentage": "10"})
        outcome = engine.evaluate([item], aggregate, (rule,))

        assert outcome.glosas[0].amount == Decimal("10.01")

    def test_cap_per_unit(self, engine, items, aggregate):
        """Test de tope sobre el valor unitario."""
        rule = make_rule(deduction={"kind": "cap", "cap": "10000", "per_unit": True})
        outcome = engine.evaluate(items[1:2], aggregate, (rule,))

        assert outcome.glosas[0].amount == Decimal("5000.00")

    def test_cap_at_contracted_value(self, engine):
        """Test de tope al valor contratado del caso."""
        item = make_item(1, "890201", "1", "90000")
        aggregate = make_aggregate(total_billed=Decimal("90000.00"), contracted_value=Decimal("80000.00"), line_count=1)
        rule = make_rule(deduction={"kind": "cap", "cap_source": "contracted_value"})
        outcome = engine.evaluate([item], aggregate, (rule,))

        assert outcome.glosas[0].amount == Decimal("10000.00")

    def test_cap_without_contracted_value_is_skipped(self, engine, items, aggregate):
        """Test que sin valor contratado la regla se omite con mensaje."""
        rule = make_rule(deduction={"kind": "cap", "cap_source": "contracted_value"})
        outcome = engine.evaluate(items, aggregate, (rule,))

        assert outcome.glosas == []
        assert len(outcome.messages) == 1
        assert "valor contratado" in outcome.messages[0]

    def test_rules_are_cumulative_on_original_subtotal(self, engine, items, aggregate):
        """Test que cada regla se calcula sobre el subtotal original."""
        rules = (
            make_rule("A", priority=1, deduction={"kind": "percentage", "percentage": "10"}),
            make_rule("B", priority=2, deduction={"kind": "percentage", "percentage": "10"}),
        )
        outcome = engine.evaluate(items[:1], aggregate, rules)

        assert [glosa.amount for glosa in outcome.glosas] == [Decimal("9000.00"), Decimal("9000.00")]

    def test_disallow_contests_remaining_value_and_stops(self, engine, items, aggregate):
        """Test que no reconocer un ítem glosa lo que queda y corta las reglas siguientes."""
        rules = (
            make_rule("A", priority=1, deduction={"kind": "fixed", "amount": "10000"}),
            make_rule("B", priority=2, deduction={"kind": "disallow"}),
            make_rule("C", priority=3, deduction={"kind": "fixed", "amount": "1"}),
        )
        outcome = engine.evaluate(items[:1], aggregate, rules)

        assert [(glosa.rule_id, glosa.amount) for glosa in outcome.glosas] == [
            ("A", Decimal("10000.00")),
            ("B", Decimal("80000.00")),
        ]
        assert [applied.rule_id for applied in outcome.rules_applied] == ["A", "B"]

    def test_case_rule_on_aggregate(self, engine, items, aggregate):
        """Test de regla de caso sobre el total facturado."""
        rule = make_rule(
            scope="case",
            conditions=[{"field": "total_billed", "operator": "gt", "value": "100000"}],
            deduction={"kind": "percentage", "percentage": "5"}
        )
        outcome = engine.evaluate(items, aggregate, (rule,))

        assert len(outcome.glosas) == 1
        assert outcome.glosas[0].line_item_id is None
        assert outcome.glosas[0].amount == Decimal("20750.00")

    def test_range_and_eps_filter(self, engine, items, aggregate):
        """Test que solo aplican reglas del rango y EPS del caso."""
        rules = (
            make_rule("OTRO-RANGO", ranges=(3, 4)),
            make_rule("OTRA-EPS", eps="Nueva EPS"),
            make_rule("INACTIVA", active=False),
            make_rule("APLICA", ranges=(2,), eps="eps sura"),
        )
        outcome = engine.evaluate(items[:1], aggregate, rules)

        assert outcome.rules_evaluated == 1
        assert [glosa.rule_id for glosa in outcome.glosas] == ["APLICA"]

    def test_result_independent_of_storage_order(self, engine, items, aggregate):
        """Test que el orden de las reglas en el snapshot no cambia el resultado."""
        rules = [
            make_rule("A", priority=5, deduction={"kind": "fixed", "amount": "100"}),
            make_rule("B", priority=5, deduction={"kind": "disallow"},
                      conditions=[{"field": "code", "operator": "eq", "value": "19101"}]),
            make_rule("C", priority=1, deduction={"kind": "percentage", "percentage": "3"}),
            make_rule("D", priority=9, scope="case", deduction={"kind": "fixed", "amount": "700"}),
            make_rule("E", priority=5, version=2, deduction={"kind": "cap", "cap": "50000"}),
        ]
        expected = engine.evaluate(items, aggregate, tuple(rules)).model_dump()

        shuffler = random.Random(20240601)
        for _ in range(10):
            shuffled = rules[:]
            shuffler.shuffle(shuffled)
            assert engine.evaluate(items, aggregate, tuple(shuffled)).model_dump() == expected

    def test_malformed_rule_aborts_evaluation(self, engine, items, aggregate):
        """Test que una regla mal formada detiene la evaluación con su identificación."""
        rules = (
            make_rule("BUENA"),
            make_rule("MALA", version=3, conditions=[{"field": "code", "operator": "regex", "value": ".*"}]),
        )
        with pytest.raises(RuleEvaluationError) as exc_info:
            engine.evaluate(items, aggregate, rules)

        assert exc_info.value.rule_id == "MALA"
        assert exc_info.value.rule_version == 3
        assert "MALA v3" in exc_info.value.messages[0]

    def test_rule_scoped_by_attention_type(self, engine, items, aggregate):
        """Test de una regla que solo aplica a atenciones de urgencias."""
        rule = make_rule(
            "URGENCIAS",
            scope="case",
            conditions=[{"field": "attention_type", "operator": "eq", "value": "urgencias"}],
            deduction={"kind": "fixed", "amount": "5000"}
        )

        urgent = engine.evaluate(items, replace(aggregate, attention_type="Urgencias"), (rule,))
        outpatient = engine.evaluate(items, replace(aggregate, attention_type="Consulta externa"), (rule,))

        assert [glosa.amount for glosa in urgent.glosas] == [Decimal("5000.00")]
        assert outpatient.glosas == []

    def test_non_finite_operand_aborts_evaluation(self, engine, items, aggregate):
        """Test que un operando NaN en una regla almacenada lanza RuleEvaluationError."""
        rule = make_rule("NAN", conditions=[{"field": "subtotal", "operator": "gt", "value": "NaN"}])

        with pytest.raises(RuleEvaluationError) as exc_info:
            engine.evaluate(items, aggregate, (rule,))

        assert exc_info.value.rule_id == "NAN"

    def test_arithmetic_error_aborts_evaluation(self, engine, items, aggregate):
        """Test que un error aritmético al comparar se reporta como RuleEvaluationError."""
        with patch("app.core.v1.rule_evaluator.matches_all", side_effect=InvalidOperation("comparación inválida")):
            with pytest.raises(RuleEvaluationError) as exc_info:
                engine.evaluate(items, aggregate, (make_rule("ARITMETICA"),))

        assert exc_info.value.rule_id == "ARITMETICA"
        assert "no pudo evaluarse" in exc_info.value.messages[0]
