"""Report generator: renders a liquidation result as an xlsx workbook.

One sheet: a header row, one row per line item and a summary row. Amounts
are written as Decimal cells with a plain ``0.00`` number format; currency
and locale formatting is left to whoever opens the file.
"""

import io
from decimal import Decimal
from typing import Dict, List, NamedTuple, Optional

from openpyxl import Workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter

from app.core.v1.amounts import ZERO, quantize_amount, sum_amounts
from app.core.v1.decorators import log_execution_time
from app.core.v1.exceptions import ReconciliationError
from app.core.v1.log_manager import LogManager
from app.core.v1.models import LiquidationResult, ReportArtifact
from app.settings.v1.general import SETTINGS

HEADERS = ["Código", "Descripción", "Valor facturado", "Valor glosa", "Valor a pagar", "Justificación"]
AMOUNT_COLUMNS = (3, 4, 5)
AMOUNT_FORMAT = "0.00"


class ReportLine(NamedTuple):
    line_item_id: str
    code: str
    description: str
    billed: Decimal
    glosa: Decimal
    payable: Decimal
    justification: str


def attribute_glosas(result: LiquidationResult) -> List[ReportLine]:
    """Attribute every glosa of a result to its line items.

    Line glosas go to their own item. Case glosas are spread pro rata to
    the billed subtotals, rounded to cents, with the rounding remainder on
    the last item so the attributed total is exact.

    Args:
        result (LiquidationResult): Result to attribute.

    Returns:
        List[ReportLine]: One line per item, in result order.
    """
    line_glosas: Dict[str, List] = {}
    case_glosas = []
    for glosa in result.glosas:
        if glosa.line_item_id is None:
            case_glosas.append(glosa)
        else:
            line_glosas.setdefault(glosa.line_item_id, []).append(glosa)

    items = result.line_items
    case_total = sum_amounts(glosa.amount for glosa in case_glosas)
    billed_total = sum_amounts(item.subtotal for item in items)

    shares: List[Decimal] = []
    for index, item in enumerate(items):
        if index == len(items) - 1:
            shares.append(case_total - sum(shares, ZERO))
        elif billed_total > ZERO:
            shares.append(quantize_amount(case_total * item.subtotal / billed_total))
        else:
            shares.append(ZERO)

    case_justifications = [f"{glosa.justification} (prorrateo)" for glosa in case_glosas]

    lines = []
    for item, share in zip(items, shares):
        own = line_glosas.get(item.line_item_id, [])
        glosa_amount = sum_amounts([glosa.amount for glosa in own] + [share])
        justifications = [glosa.justification for glosa in own]
        if share != ZERO:
            justifications.extend(case_justifications)
        lines.append(
            ReportLine(
                line_item_id=item.line_item_id,
                code=item.code,
                description=item.description,
                billed=item.subtotal,
                glosa=glosa_amount,
                payable=quantize_amount(item.subtotal - glosa_amount),
                justification="; ".join(justifications)
            )
        )
    return lines


class ReportGenerator:
    """Builds the liquidation workbook."""

    def __init__(self, tolerance: Optional[Decimal] = None, sheet_title: Optional[str] = None):
        self.logger = LogManager(__name__)
        self.tolerance = tolerance if tolerance is not None else SETTINGS.RECONCILIATION_TOLERANCE
        self.sheet_title = sheet_title or SETTINGS.REPORT_SHEET_TITLE

    @log_execution_time
    def render(self, result: LiquidationResult) -> ReportArtifact:
        """Render a result.

        Args:
            result (LiquidationResult): Computed result.

        Returns:
            ReportArtifact: Workbook bytes and file name.

        Raises:
            ReconciliationError: If the rows do not reconcile with the result
                totals. Nothing is rendered in that case.
        """
        lines = attribute_glosas(result)
        self.reconcile(result, lines)

        wb = Workbook()
        ws = wb.active
        ws.title = self.sheet_title
        wb.properties.title = f"Liquidación radicado {result.case_snapshot.case_number}"

        ws.append(HEADERS)
        for line in lines:
            ws.append([line.code, line.description, line.billed, line.glosa, line.payable, line.justification])
        ws.append(["TOTAL", "", result.total_billed, result.total_glosa, result.final_payable, ""])

        self._format_sheet(ws, len(lines))

        output = io.BytesIO()
        wb.save(output)

        self.logger.info(
            "Liquidation report rendered",
            case_id=result.case_id,
            run_id=result.run_id,
            rows=len(lines)
        )
        return ReportArtifact(
            filename=f"liquidacion_{result.case_snapshot.case_number}_{result.run_id[:8]}.xlsx",
            content=output.getvalue(),
            row_count=len(lines)
        )

    def reconcile(self, result: LiquidationResult, lines: List[ReportLine]):
        """Check report rows against the result totals.

        Raises:
            ReconciliationError: On any difference above the tolerance.
        """
        problems = []

        billed = sum_amounts(line.billed for line in lines)
        if abs(billed - result.total_billed) > self.tolerance:
            problems.append(f"la suma facturada por ítem {billed} difiere del total facturado {result.total_billed}")

        glosa = sum_amounts(line.glosa for line in lines)
        if abs(glosa - result.total_glosa) > self.tolerance:
            problems.append(f"la suma de glosas por ítem {glosa} difiere del total de glosas {result.total_glosa}")

        payable = max(ZERO, sum_amounts(line.payable for line in lines))
        if abs(payable - result.final_payable) > self.tolerance:
            problems.append(f"la suma a pagar por ítem {payable} difiere del valor final a pagar {result.final_payable}")

        expected_final = max(ZERO, result.total_billed - result.total_glosa)
        if abs(expected_final - result.final_payable) > self.tolerance:
            problems.append(
                f"el valor final a pagar {result.final_payable} no corresponde a facturado menos glosas {expected_final}"
            )

        if problems:
            messages = [f"Error de conciliación del reporte: {problem}" for problem in problems]
            self.logger.error("Report reconciliation failed", case_id=result.case_id, problems=len(problems))
            raise ReconciliationError("Report totals do not reconcile with the liquidation result", messages, result)

    def _format_sheet(self, ws, line_count: int):
        header_font = Font(bold=True, color="FFFFFF")
        header_fill = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
        for col in range(1, len(HEADERS) + 1):
            cell = ws.cell(row=1, column=col)
            cell.font = header_font
            cell.fill = header_fill

        summary_row = line_count + 2
        for col in range(1, len(HEADERS) + 1):
            ws.cell(row=summary_row, column=col).font = Font(bold=True)

        for row in range(2, summary_row + 1):
            for col in AMOUNT_COLUMNS:
                ws.cell(row=row, column=col).number_format = AMOUNT_FORMAT

        widths = [14, 48, 18, 18, 18, 80]
        for index, width in enumerate(widths, start=1):
            ws.column_dimensions[get_column_letter(index)].width = width
        ws.freeze_panes = "A2"
