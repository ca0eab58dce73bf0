"""PDF text extraction module."""
import fitz  # PyMuPDF
from typing import List
from utils.logger import setup_logger
from utils.errors import InputError
from ingestion.models import RawPage

logger = setup_logger(__name__)


class PDFExtractionError(InputError):
    """Raised when PDF extraction fails."""
    pass


class PDFExtractor:
    """Extracts per-page text from PDF books."""

    def extract_pages(self, pdf_bytes: bytes) -> List[RawPage]:
        """Extract the raw text of every physical page.

        Blank pages are kept so page numbers stay aligned with the document;
        filtering happens downstream.

        Args:
            pdf_bytes: Contents of the PDF file

        Returns:
            One RawPage per page, numbered from 1

        Raises:
            PDFExtractionError: If the PDF cannot be opened or has no pages
        """
        try:
            doc = fitz.open(stream=pdf_bytes, filetype="pdf")
        except Exception as e:
            raise PDFExtractionError(f"Failed to open PDF: {e}") from e

        try:
            if doc.page_count == 0:
                raise PDFExtractionError("PDF has no pages")

            pages = [
                RawPage(page_number=page_num + 1, text=doc[page_num].get_text())
                for page_num in range(doc.page_count)
            ]
        finally:
            doc.close()

        total_text = ''.join(page.text for page in pages)
        if not total_text.strip():
            raise PDFExtractionError(
                "PDF appears to contain no extractable text. "
                "This may be a scanned image PDF. Please use an OCR'd version."
            )

        logger.info(f"Extracted {len(pages)} pages")
        return pages
