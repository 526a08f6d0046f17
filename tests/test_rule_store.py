"""
Tests para el almacén de reglas versionadas.
"""

import pytest

from app.core.v1.exceptions import RuleEvaluationError, RuleNotFoundException, ValidationException
from app.settings.v1.general import SETTINGS

from utils import rule_data


class TestPublishRule:
    """Tests de publicación de reglas."""

    def test_first_publication_is_version_one(self, rule_store):
        """Test que la primera publicación recibe la versión 1."""
        rule = rule_store.publish_rule(rule_data("TOPE-CONSULTA"))

        assert rule.version == 1
        assert rule.active is True
        stored = rule_store.get_rule("TOPE-CONSULTA")
        assert (stored.rule_id, stored.version, stored.label) == (rule.rule_id, 1, rule.label)

    def test_republication_appends_a_version(self, rule_store):
        """Test que publicar de nuevo crea una versión sin modificar la anterior."""
        first = rule_store.publish_rule(rule_data("TOPE-CONSULTA", label="Tope v1"))
        second = rule_store.publish_rule(rule_data("TOPE-CONSULTA", label="Tope v2"))

        assert second.version == 2
        assert rule_store.get_rule("TOPE-CONSULTA", version=1).label == first.label
        assert rule_store.get_rule("TOPE-CONSULTA").label == "Tope v2"
        assert [rule.version for rule in rule_store.list_versions("TOPE-CONSULTA")] == [1, 2]

    def test_deactivate_publishes_inactive_version(self, rule_store):
        """Test que desactivar una regla publica una versión inactiva."""
        rule_store.publish_rule(rule_data("TOPE-CONSULTA"))
        inactive = rule_store.deactivate_rule("TOPE-CONSULTA", created_by="auditor01")

        assert inactive.version == 2
        assert inactive.active is False
        assert inactive.created_by == "auditor01"

    @pytest.mark.parametrize("overrides", [
        {"deduction": {"kind": "percentage", "percentage": "150"}},
        {"conditions": [{"field": "patient_name", "operator": "eq", "value": "x"}]},
        {"conditions": [{"field": "subtotal", "operator": "gt", "value": "NaN"}]},
        {"conditions": [{"field": "total_billed", "operator": "between", "value": "0", "value_max": "Infinity"}]},
        {"ranges": [5]},
        {"label": ""},
    ])
    def test_malformed_rules_are_rejected(self, rule_store, overrides):
        """Test que reglas mal formadas no se publican."""
        with pytest.raises(ValidationException):
            rule_store.publish_rule(rule_data("REGLA-1", **overrides))

        assert rule_store.list_versions("REGLA-1") == []

    def test_rule_id_format(self, rule_store):
        """Test que el identificador de regla no admite espacios."""
        with pytest.raises(ValidationException):
            rule_store.publish_rule(rule_data("regla con espacios"))

    def test_unknown_rule(self, rule_store):
        """Test que una regla inexistente lanza RuleNotFoundException."""
        with pytest.raises(RuleNotFoundException):
            rule_store.get_rule("NO-EXISTE")


class TestSnapshot:
    """Tests del snapshot de reglas por rango y EPS."""

    def test_only_latest_active_versions(self, rule_store):
        """Test que solo cuenta la última versión de cada regla."""
        rule_store.publish_rule(rule_data("A", priority=20))
        rule_store.publish_rule(rule_data("A", priority=20, label="A v2"))
        rule_store.publish_rule(rule_data("B", priority=10))
        rule_store.deactivate_rule("B")

        snapshot = rule_store.snapshot(1, "EPS Sura")

        assert [(rule.rule_id, rule.version) for rule in snapshot] == [("A", 2)]
        assert snapshot[0].label == "A v2"

    def test_filters_by_range_and_eps(self, rule_store):
        """Test del filtro por rango y EPS."""
        rule_store.publish_rule(rule_data("RANGO-1", ranges=[1]))
        rule_store.publish_rule(rule_data("RANGO-3-4", ranges=[3, 4]))
        rule_store.publish_rule(rule_data("SOLO-SURA", eps="EPS Sura"))
        rule_store.publish_rule(rule_data("TODAS"))

        assert {rule.rule_id for rule in rule_store.snapshot(1, "eps sura")} == {"RANGO-1", "SOLO-SURA", "TODAS"}
        assert {rule.rule_id for rule in rule_store.snapshot(3, "Nueva EPS")} == {"RANGO-3-4", "TODAS"}

    def test_ordered_by_priority_then_rule_id(self, rule_store):
        """Test que el snapshot queda en orden total de evaluación."""
        rule_store.publish_rule(rule_data("C", priority=5))
        rule_store.publish_rule(rule_data("B", priority=1))
        rule_store.publish_rule(rule_data("A", priority=5))

        assert [rule.rule_id for rule in rule_store.snapshot(1)] == ["B", "A", "C"]

    def test_unloadable_stored_rule(self, rule_store, mongodb_manager):
        """Test que una regla almacenada ilegible detiene el snapshot."""
        mongodb_manager.collection(SETTINGS.MONGODB_COLLECTION_RULES).insert_one(
            {"rule_id": "ROTA", "version": 1, "label": "Rota", "deduction": {"kind": "descuento"}}
        )

        with pytest.raises(RuleEvaluationError) as exc_info:
            rule_store.snapshot(1)

        assert exc_info.value.rule_id == "ROTA"
