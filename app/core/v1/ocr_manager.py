"""OCR Manager for reading scanned invoices with Azure Document Intelligence."""

from typing import Optional

from azure.ai.documentintelligence import DocumentIntelligenceClient
from azure.ai.documentintelligence.models import AnalyzeDocumentRequest
from azure.core.credentials import AzureKeyCredential
from azure.core.exceptions import AzureError

from app.core.v1.exceptions import OCRException, RuntimeException
from app.core.v1.decorators import retry, log_execution_time
from app.core.v1.log_manager import LogManager
from app.settings.v1.settings import SETTINGS


class OCRManager:
    """
    Reads the text of PDFs that carry no text layer.

    Only built when Document Intelligence credentials are configured; the
    extractor works without it for digital PDFs and plain text.
    """

    def __init__(self, client: Optional[DocumentIntelligenceClient] = None):
        """
        Initialize OCR Manager.

        Args:
            client (Optional[DocumentIntelligenceClient]): Pre-built client,
                built from the Azure settings when omitted.
        """
        self.logger = LogManager(__name__)

        if client is not None:
            self.client = client
            return

        try:
            self.client = DocumentIntelligenceClient(
                endpoint=SETTINGS.AZURE.AZURE_DOCUMENT_INTELLIGENCE_ENDPOINT,
                credential=AzureKeyCredential(SETTINGS.AZURE.AZURE_DOCUMENT_INTELLIGENCE_KEY)
            )
            self.logger.info("OCR Manager initialized successfully")
        except Exception as err:
            self.logger.error(f"Failed to initialize OCR Manager: {err}")
            raise OCRException(f"OCR initialization failed: {err}") from err

    @log_execution_time
    def extract_text(self, file_content: bytes) -> str:
        """Extract the text lines of a document.

        Args:
            file_content (bytes): Document content as bytes.

        Returns:
            str: Text with one line per recognized line, pages in order.

        Raises:
            OCRException: If text extraction fails.
        """
        try:
            return self._analyze(file_content)
        except RuntimeException as err:
            raise OCRException(f"OCR processing failed: {err.message}") from err

    @retry(exceptions=(AzureError,))
    def _analyze(self, file_content: bytes) -> str:
        self.logger.info("Starting OCR processing", size=len(file_content))

        poller = self.client.begin_analyze_document(
            "prebuilt-read",
            AnalyzeDocumentRequest(bytes_source=file_content)
        )
        result = poller.result()

        lines = []
        for page in result.pages or []:
            for line in page.lines or []:
                lines.append(line.content)

        self.logger.info("OCR processing completed", pages=len(result.pages or []), lines=len(lines))
        return "\n".join(lines)
