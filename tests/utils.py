"""
Utilidades auxiliares para los tests del motor de liquidación.
"""

from decimal import Decimal
from typing import Any, Dict, Optional

from app.core.v1.models import Document, LineItem
from app.core.v1.rule_conditions import CaseAggregate


SAMPLE_INVOICE = (
    "FACTURA ELECTRONICA FE-10023\n"
    "codigo;descripcion;cantidad;valor_unitario;subtotal\n"
    "890201;CONSULTA DE PRIMERA VEZ MEDICINA GENERAL;1;45.000;45.000\n"
    "903841;GLUCOSA EN SUERO;2;12.500;25.000\n"
    "TOTAL A COBRAR: $ 70.000\n"
).encode("utf-8")


def invoice(*rows: str, total: Optional[str] = None) -> bytes:
    """Construir una factura delimitada por ';' con las filas dadas."""
    lines = ["codigo;descripcion;cantidad;valor_unitario;subtotal", *rows]
    if total is not None:
        lines.append(f"TOTAL A COBRAR: $ {total}")
    return ("\n".join(lines) + "\n").encode("utf-8")


def make_document(filename: str = "factura.txt", content_type: str = "text/plain", **overrides) -> Document:
    """Documento en memoria para probar el extractor sin repositorio."""
    data = {
        "document_id": "64b7f0c2a1b2c3d4e5f60718",
        "case_id": "64b7f0c2a1b2c3d4e5f60700",
        "filename": filename,
        "content_type": content_type,
        "artifact_ref": "local://cases/test/documents/factura.txt",
    }
    data.update(overrides)
    return Document(**data)


def make_item(index: int, code: str, quantity: str, unit_price: str, description: str = "") -> LineItem:
    """Ítem facturado del documento de prueba."""
    return LineItem(
        line_item_id=f"doc-1:{index}",
        document_id="doc-1",
        code=code,
        description=description or f"Servicio {code}",
        quantity=Decimal(quantity),
        unit_price=Decimal(unit_price)
    )


def make_aggregate(**overrides) -> CaseAggregate:
    """Agregado de caso con valores por defecto."""
    data = {
        "case_id": "64b7f0c2a1b2c3d4e5f60700",
        "eps": "EPS Sura",
        "nit": "900123456-7",
        "range": 1,
        "total_billed": Decimal("0.00"),
        "contracted_value": None,
        "line_count": 0,
        "document_count": 1,
        "failed_document_count": 0,
    }
    data.update(overrides)
    return CaseAggregate(**data)


def rule_data(rule_id: str = "REGLA-1", **overrides) -> Dict[str, Any]:
    """Definición mínima de una regla de glosa."""
    data = {
        "rule_id": rule_id,
        "label": f"Regla {rule_id}",
        "scope": "line",
        "priority": 100,
        "conditions": [],
        "deduction": {"kind": "fixed", "amount": "1000.00"},
    }
    data.update(overrides)
    return data
