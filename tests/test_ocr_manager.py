"""
Tests para el OCR de facturas escaneadas con un cliente de Document Intelligence simulado.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from azure.core.exceptions import AzureError

from app.core.v1.exceptions import OCRException
from app.core.v1.ocr_manager import OCRManager


def analyze_result(*pages):
    return SimpleNamespace(
        pages=[SimpleNamespace(lines=[SimpleNamespace(content=line) for line in page]) for page in pages]
    )


class TestOCRManager:
    """Tests de extracción de texto."""

    def test_lines_in_page_order(self):
        """Test que las líneas se devuelven por página y en orden."""
        client = MagicMock()
        client.begin_analyze_document.return_value.result.return_value = analyze_result(
            ["FACTURA FE-10023", "890201 CONSULTA 1 90.000"],
            ["TOTAL A PAGAR 90.000"],
        )

        text = OCRManager(client=client).extract_text(b"%PDF-1.7")

        assert text.splitlines() == ["FACTURA FE-10023", "890201 CONSULTA 1 90.000", "TOTAL A PAGAR 90.000"]
        assert client.begin_analyze_document.call_args.args[0] == "prebuilt-read"

    def test_empty_result(self):
        client = MagicMock()
        client.begin_analyze_document.return_value.result.return_value = SimpleNamespace(pages=None)

        assert OCRManager(client=client).extract_text(b"%PDF-1.7") == ""

    def test_service_failure(self):
        """Test que un error persistente del servicio lanza OCRException."""
        client = MagicMock()
        client.begin_analyze_document.side_effect = AzureError("throttled")

        with patch("app.core.v1.decorators.time.sleep"):
            with pytest.raises(OCRException):
                OCRManager(client=client).extract_text(b"%PDF-1.7")
