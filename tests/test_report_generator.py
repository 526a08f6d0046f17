"""
Tests para el generador del reporte de liquidación en Excel.
"""

import io
from decimal import Decimal

import pytest
from openpyxl import load_workbook

from app.core.v1.exceptions import ReconciliationError
from app.core.v1.models import Case, Glosa, LiquidationResult
from app.core.v1.report_generator import HEADERS, ReportGenerator, attribute_glosas

from utils import make_item

CASE_ID = "64b7f0c2a1b2c3d4e5f60700"


def make_result(items, glosas, **overrides) -> LiquidationResult:
    """Resultado de liquidación consistente con sus ítems y glosas."""
    total_billed = sum((item.subtotal for item in items), Decimal("0.00"))
    total_glosa = sum((glosa.amount for glosa in glosas), Decimal("0.00"))
    data = {
        "result_id": "64b7f0c2a1b2c3d4e5f60799",
        "case_id": CASE_ID,
        "run_id": "0f1e2d3c4b5a69788796a5b4c3d2e1f0",
        "case_snapshot": Case(
            case_id=CASE_ID,
            case_number="RAD-2024-000123",
            eps="EPS Sura",
            nit="900123456-7",
            biller_name="Clínica Central S.A.S.",
            total_billed=total_billed
        ),
        "line_items": items,
        "total_billed": total_billed,
        "total_glosa": total_glosa,
        "final_payable": max(Decimal("0.00"), total_billed - total_glosa),
        "glosas": glosas,
    }
    data.update(overrides)
    return LiquidationResult(**data)


def make_glosa(amount: str, line_item_id=None, rule_id: str = "REGLA-1") -> Glosa:
    return Glosa(
        case_id=CASE_ID,
        line_item_id=line_item_id,
        rule_id=rule_id,
        rule_version=1,
        amount=Decimal(amount),
        justification=f"Regla {rule_id}: ajuste"
    )


@pytest.fixture
def items():
    return [
        make_item(1, "890201", "1", "30000", "CONSULTA"),
        make_item(2, "903841", "2", "35000", "GLUCOSA"),
    ]


class TestAttributeGlosas:
    """Tests de atribución de glosas a los ítems."""

    def test_line_glosas_go_to_their_item(self, items):
        """Test que una glosa de ítem se atribuye a su propio ítem."""
        result = make_result(items, [make_glosa("5000", "doc-1:2")])
        lines = attribute_glosas(result)

        assert [line.glosa for line in lines] == [Decimal("0.00"), Decimal("5000.00")]
        assert [line.payable for line in lines] == [Decimal("30000.00"), Decimal("65000.00")]
        assert lines[1].justification == "Regla REGLA-1: ajuste"
        assert lines[0].justification == ""

    def test_case_glosa_is_prorated_with_remainder_on_last(self, items):
        """Test que una glosa de caso se reparte por valor facturado sin perder centavos."""
        result = make_result(items, [make_glosa("1000.01", rule_id="CASO")])
        lines = attribute_glosas(result)

        assert [line.glosa for line in lines] == [Decimal("300.00"), Decimal("700.01")]
        assert sum(line.glosa for line in lines) == Decimal("1000.01")
        assert all("(prorrateo)" in line.justification for line in lines)


class TestRender:
    """Tests del libro de Excel generado."""

    def test_workbook_rows_and_totals(self, items):
        """Test de encabezados, filas por ítem y fila de totales."""
        result = make_result(items, [make_glosa("5000", "doc-1:1")])
        artifact = ReportGenerator(sheet_title="Liquidacion").render(result)

        wb = load_workbook(io.BytesIO(artifact.content))
        ws = wb["Liquidacion"]
        rows = list(ws.iter_rows(values_only=True))

        assert list(rows[0]) == HEADERS
        assert rows[1][:5] == ("890201", "CONSULTA", 30000, 5000, 25000)
        assert rows[2][:5] == ("903841", "GLUCOSA", 70000, 0, 70000)
        assert rows[3][0] == "TOTAL"
        assert rows[3][2:5] == (100000, 5000, 95000)
        assert artifact.row_count == 2
        assert ws["C2"].number_format == "0.00"

    def test_filename_uses_case_number_and_run(self, items):
        """Test del nombre de archivo del reporte."""
        artifact = ReportGenerator().render(make_result(items, []))

        assert artifact.filename == "liquidacion_RAD-2024-000123_0f1e2d3c.xlsx"
        assert artifact.content_type.endswith("spreadsheetml.sheet")

    def test_tampered_totals_do_not_reconcile(self, items):
        """Test que totales inconsistentes lanzan ReconciliationError sin generar reporte."""
        result = make_result(items, [make_glosa("5000", "doc-1:1")], total_glosa=Decimal("4000.00"))

        with pytest.raises(ReconciliationError) as exc_info:
            ReportGenerator().render(result)

        assert exc_info.value.result is result
        assert any("glosas" in message for message in exc_info.value.messages)

    def test_tolerance(self, items):
        """Test que diferencias dentro de la tolerancia se aceptan."""
        result = make_result(items, [], total_billed=Decimal("100000.01"), final_payable=Decimal("100000.01"))

        ReportGenerator(tolerance=Decimal("0.01")).reconcile(result, attribute_glosas(result))
        with pytest.raises(ReconciliationError):
            ReportGenerator(tolerance=Decimal("0.00")).reconcile(result, attribute_glosas(result))
