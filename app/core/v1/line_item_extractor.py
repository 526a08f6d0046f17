"""Document extractor: turns a submitted document into billed line items.

PDFs are read with pdfplumber (tables first, then text lines). Plain text
and CSV-like exports are parsed line by line. Extraction is a pure
transform: it never touches the case, the repository or the rule store,
and it never raises; unreadable input produces a failed outcome with a
diagnostic.
"""

import io
import re
import unicodedata
from decimal import Decimal
from typing import List, NamedTuple, Optional, Sequence

import pdfplumber

from app.core.v1.amounts import CENT, parse_amount, quantize_amount, sum_amounts
from app.core.v1.decorators import log_execution_time
from app.core.v1.log_manager import LogManager
from app.core.v1.models import (
    Diagnostic,
    DiagnosticSeverity,
    Document,
    ExtractionOutcome,
    ExtractionStatus,
    LineItem,
)
from app.core.v1.ocr_manager import OCRManager

DELIMITERS = re.compile(r"\s*[;|\t]\s*")

# 890201 CONSULTA DE PRIMERA VEZ 1 $ 90.000 $ 90.000
FREE_FORM_LINE = re.compile(
    r"^(?P<code>(?=[A-Z]*\d)[A-Z0-9][A-Z0-9\-]{2,14})\s+"
    r"(?P<description>.+?)\s+"
    r"(?P<quantity>\d+(?:[.,]\d+)?)\s+"
    r"\$?\s*(?P<unit_price>\d[\d.,]*)"
    r"(?:\s+\$?\s*(?P<subtotal>\d[\d.,]*))?\s*$",
    re.IGNORECASE
)

DECLARED_TOTAL = re.compile(
    r"total\s*a\s*(?:cobrar|pagar)[:\s]*\$?\s*(?P<amount>\d[\d.,]*)",
    re.IGNORECASE
)

HEADER_KEYWORDS = (
    ("unit_price", ("unitario", "unit", "precio", "tarifa")),
    ("subtotal", ("total", "subtotal")),
    ("quantity", ("cantidad", "cant", "qty", "quantity")),
    ("code", ("codigo", "cups", "cod", "code")),
    ("description", ("descripcion", "procedimiento", "servicio", "detalle", "description")),
)


class ParsedRow(NamedTuple):
    code: str
    description: str
    quantity: Decimal
    unit_price: Decimal
    declared_subtotal: Optional[Decimal]
    source: str


def _normalize(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text or "")
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).strip().lower()


class LineItemExtractor:
    """Extracts line items from PDFs and structured text."""

    def __init__(self, ocr_manager: Optional[OCRManager] = None):
        """
        Initialize the extractor.

        Args:
            ocr_manager (Optional[OCRManager]): Used for PDFs without a text
                layer. Such PDFs fail extraction when it is not configured.
        """
        self.logger = LogManager(__name__)
        self.ocr_manager = ocr_manager

    @log_execution_time
    def extract(self, document: Document, content: bytes) -> ExtractionOutcome:
        """Extract the line items of one document.

        Args:
            document (Document): Document record (id, filename, content type).
            content (bytes): Raw document content.

        Returns:
            ExtractionOutcome: Line items in document order plus diagnostics.
        """
        diagnostics: List[Diagnostic] = []

        def warn(message: str):
            diagnostics.append(
                Diagnostic(severity=DiagnosticSeverity.WARNING, message=message, document_id=document.document_id)
            )

        try:
            rows, declared_total = self._read_rows(document, content, warn)
            line_items = self._build_line_items(document.document_id, rows, warn)
        except Exception as err:
            self.logger.warning(
                "Document extraction failed",
                document_id=document.document_id,
                filename=document.filename,
                error=str(err)
            )
            diagnostics.append(
                Diagnostic(
                    severity=DiagnosticSeverity.ERROR,
                    message=f"No fue posible leer el documento '{document.filename}': {err}",
                    document_id=document.document_id
                )
            )
            return ExtractionOutcome(
                document_id=document.document_id,
                status=ExtractionStatus.FAILED,
                diagnostics=diagnostics
            )

        if not line_items:
            warn(f"El documento '{document.filename}' no contiene ítems facturados reconocibles")

        if declared_total is not None and line_items:
            computed_total = sum_amounts(item.subtotal for item in line_items)
            if abs(computed_total - quantize_amount(declared_total)) > CENT:
                warn(
                    f"El total declarado {quantize_amount(declared_total)} del documento "
                    f"'{document.filename}' difiere de la suma de ítems {computed_total}"
                )

        self.logger.info(
            "Document extracted",
            document_id=document.document_id,
            line_items=len(line_items),
            diagnostics=len(diagnostics)
        )
        return ExtractionOutcome(
            document_id=document.document_id,
            status=ExtractionStatus.SUCCEEDED,
            line_items=line_items,
            diagnostics=diagnostics
        )

    def _read_rows(self, document: Document, content: bytes, warn):
        if not content:
            raise ValueError("el documento está vacío")

        looks_like_pdf = (
            document.content_type == "application/pdf"
            or document.filename.lower().endswith(".pdf")
        )
        if content.lstrip()[:5] == b"%PDF-":
            return self._rows_from_pdf(content, warn)
        if looks_like_pdf:
            raise ValueError("el archivo no es un PDF válido")

        text = self._decode_text(content)
        return self._rows_from_text(text, warn), self._declared_total(text)

    def _decode_text(self, content: bytes) -> str:
        if b"\x00" in content:
            raise ValueError("contenido binario no reconocido")
        try:
            return content.decode("utf-8-sig")
        except UnicodeDecodeError:
            return content.decode("latin-1")

    def _rows_from_pdf(self, content: bytes, warn):
        rows: List[ParsedRow] = []
        text_parts: List[str] = []

        with pdfplumber.open(io.BytesIO(content)) as pdf:
            for page in pdf.pages:
                for table in page.extract_tables() or []:
                    rows.extend(self._rows_from_table(table, warn))
                text_parts.append(page.extract_text() or "")

        text = "\n".join(part for part in text_parts if part)
        if not text.strip() and not rows:
            if self.ocr_manager is None:
                raise ValueError("el PDF no tiene capa de texto y el OCR no está configurado")
            warn("El PDF no tiene capa de texto; se leyó mediante OCR")
            text = self.ocr_manager.extract_text(content)

        if not rows:
            rows = self._rows_from_text(text, warn)
        return rows, self._declared_total(text)

    def _rows_from_table(self, table: Sequence[Sequence[Optional[str]]], warn) -> List[ParsedRow]:
        """Map a table to rows using its header cells; tables without a usable header are ignored."""
        if not table or len(table) < 2:
            return []

        columns = {}
        for index, cell in enumerate(table[0]):
            header = _normalize(cell or "")
            for field, keywords in HEADER_KEYWORDS:
                if field not in columns and any(keyword in header for keyword in keywords):
                    columns[field] = index
                    break

        required = {"code", "quantity", "unit_price"}
        if not required.issubset(columns):
            return []

        rows = []
        for number, raw in enumerate(table[1:], start=2):
            cells = [(cell or "").strip() for cell in raw]
            if not any(cells):
                continue

            def cell(field):
                index = columns.get(field)
                return cells[index] if index is not None and index < len(cells) else ""

            row = self._make_row(
                cell("code"), cell("description"), cell("quantity"), cell("unit_price"), cell("subtotal"),
                source=f"tabla, fila {number}", warn=warn
            )
            if row is not None:
                rows.append(row)
        return rows

    def _rows_from_text(self, text: str, warn) -> List[ParsedRow]:
        rows: List[ParsedRow] = []
        seen_delimited = False

        for number, raw_line in enumerate(text.splitlines(), start=1):
            line = raw_line.strip()
            if not line:
                continue

            fields = DELIMITERS.split(line)
            if len(fields) in (4, 5):
                subtotal = fields[4] if len(fields) == 5 else ""
                is_first = not seen_delimited
                seen_delimited = True
                row = self._make_row(
                    fields[0], fields[1], fields[2], fields[3], subtotal,
                    source=f"línea {number}",
                    warn=None if is_first else warn
                )
                if row is not None:
                    rows.append(row)
                continue

            match = FREE_FORM_LINE.match(line)
            if match:
                row = self._make_row(
                    match.group("code"),
                    match.group("description"),
                    match.group("quantity"),
                    match.group("unit_price"),
                    match.group("subtotal") or "",
                    source=f"línea {number}",
                    warn=warn
                )
                if row is not None:
                    rows.append(row)
        return rows

    def _make_row(self, code, description, quantity, unit_price, subtotal, source: str, warn) -> Optional[ParsedRow]:
        """Build a row, or report and drop it; ``warn=None`` drops silently (header rows)."""
        code = (code or "").strip()
        try:
            parsed_quantity = parse_amount(quantity)
            parsed_unit_price = parse_amount(unit_price)
            parsed_subtotal = parse_amount(subtotal) if subtotal else None
        except ValueError:
            if warn is not None:
                warn(f"Se ignoró la {source}: valores numéricos ilegibles")
            return None

        if not code:
            if warn is not None:
                warn(f"Se ignoró la {source}: no tiene código de servicio")
            return None
        if parsed_quantity <= 0 or parsed_unit_price < 0:
            if warn is not None:
                warn(f"Se ignoró la {source}: cantidad o valor unitario inválido")
            return None

        return ParsedRow(
            code=code,
            description=(description or "").strip(),
            quantity=parsed_quantity,
            unit_price=parsed_unit_price,
            declared_subtotal=parsed_subtotal,
            source=source
        )

    def _build_line_items(self, document_id: str, rows: List[ParsedRow], warn) -> List[LineItem]:
        line_items = []
        for index, row in enumerate(rows, start=1):
            item = LineItem(
                line_item_id=f"{document_id}:{index}",
                document_id=document_id,
                code=row.code,
                description=row.description,
                quantity=row.quantity,
                unit_price=row.unit_price
            )
            if row.declared_subtotal is not None and abs(quantize_amount(row.declared_subtotal) - item.subtotal) > CENT:
                warn(
                    f"En la {row.source} (código {row.code}) el subtotal declarado "
                    f"{quantize_amount(row.declared_subtotal)} no coincide con cantidad × valor unitario "
                    f"{item.subtotal}; se usa {item.subtotal}"
                )
            line_items.append(item)
        return line_items

    def _declared_total(self, text: str) -> Optional[Decimal]:
        match = DECLARED_TOTAL.search(text or "")
        if not match:
            return None
        try:
            return parse_amount(match.group("amount"))
        except ValueError:
            return None
