"""PDF text extractors used by the document ingestor."""

import io
from typing import Protocol, Tuple

import structlog
from pypdf import PdfReader
from pypdf.errors import PyPdfError

from llamawatch.common.errors import DecodeError

logger = structlog.get_logger()


class PDFExtractor(Protocol):
    """Turns PDF bytes into (text, page_count)."""

    def extract(self, data: bytes) -> Tuple[str, int]:
        ...


class PyPDFExtractor:
    """Extracts the text layer of every page with pypdf."""

    def extract(self, data: bytes) -> Tuple[str, int]:
        try:
            reader = PdfReader(io.BytesIO(data))
            pages = [page.extract_text() or "" for page in reader.pages]
        except (PyPdfError, ValueError) as e:
            raise DecodeError(f"failed to read PDF: {e}") from e

        text = "\n".join(page for page in pages if page)
        logger.debug("Extracted PDF text", pages=len(pages), characters=len(text))
        return text, len(pages)


class PlaceholderPDFExtractor:
    """
    Stand-in extractor that does not parse the PDF.

    Produces a fixed single-page description of the upload, which is enough
    to exercise the ingestion and retrieval path without a text layer.
    """

    def extract(self, data: bytes) -> Tuple[str, int]:
        text = (
            f"This is simulated content from a PDF document of {len(data)} bytes. "
            "A real extractor would return the text of each page, which would "
            "then be chunked for retrieval."
        )
        return text, 1
