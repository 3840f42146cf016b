"""Document processing service for PDF text extraction and chunking."""
import hashlib
import io
from typing import List, Tuple

import pdfplumber
from opentelemetry import trace

from pdf_rag.exceptions import EmptyDocumentError, ExtractionError
from pdf_rag.models.document import Chunk, Document, IngestedDocument, PageSpan
from pdf_rag.utils.logger import logger
from pdf_rag.utils.pdf_validator import validate_pdf_bytes
from pdf_rag.utils.text_cleaner import clean_text, count_titles, join_pages, page_for_offset

tracer = trace.get_tracer(__name__)


def extract_text_from_pdf(pdf_bytes: bytes) -> Tuple[List[Tuple[int, str]], bool, int]:
    """
    Extract text from PDF bytes using pdfplumber, one entry per page.

    Args:
        pdf_bytes: Raw PDF content

    Returns:
        (pages, has_text_layer, title_count) where pages is a list of (page_number, cleaned_text)
        tuples, has_text_layer tells whether any page produced raw text at all and
        title_count is the number of heading-like lines

    Raises:
        ExtractionError: If the PDF cannot be opened or read
    """
    pages_data = []
    has_text_layer = False
    title_count = 0

    try:
        with pdfplumber.open(io.BytesIO(pdf_bytes)) as pdf:
            for page_num, page in enumerate(pdf.pages, 1):
                raw_text = page.extract_text() or ""
                if raw_text:
                    has_text_layer = True
                    title_count += count_titles(raw_text)
                pages_data.append((page_num, clean_text(raw_text)))
    except Exception as e:
        logger.error(f"Error reading PDF: {str(e)}")
        raise ExtractionError(f"Failed to process PDF file: {str(e)}") from e

    return pages_data, has_text_layer, title_count


class DocumentProcessor:
    """Handles PDF validation, extraction, cleaning, and chunking."""

    def __init__(
        self,
        chunk_size: int = 500,
        chunk_overlap: int = 100,
        max_pages: int = 1000,
        page_separator: str = " ",
    ):
        """
        Initialize document processor.

        Args:
            chunk_size: Target size for text chunks (in characters)
            chunk_overlap: Overlap between adjacent chunks (in characters)
            max_pages: Maximum number of pages accepted
            page_separator: Text inserted between consecutive pages

        Raises:
            ValueError: If the chunking parameters are inconsistent
        """
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            raise ValueError(
                f"chunk_overlap ({chunk_overlap}) must be >= 0 and less than chunk_size ({chunk_size})"
            )

        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.max_pages = max_pages
        self.page_separator = page_separator

    def chunk_text_simple(self, text: str) -> List[Tuple[int, int]]:
        """
        Split text into overlapping character windows.

        Window i covers text[i * (chunk_size - overlap) : ... + chunk_size]. The last
        window is the first one reaching the end of the text and may be shorter.

        Args:
            text: Text to chunk

        Returns:
            List of (start, end) offsets
        """
        if not text:
            return []

        windows = []
        step = self.chunk_size - self.chunk_overlap
        start = 0
        text_length = len(text)

        while True:
            end = min(start + self.chunk_size, text_length)
            windows.append((start, end))
            if end >= text_length:
                break
            start += step

        return windows

    def build_chunks(self, text: str, pages: List[PageSpan], document_id: str) -> List[Chunk]:
        """
        Turn extracted text into Chunk objects with page back-references.

        Args:
            text: Full extracted document text
            pages: Page spans inside text
            document_id: Unique document identifier

        Returns:
            Ordered list of Chunk objects
        """
        chunks = []
        for chunk_index, (start, end) in enumerate(self.chunk_text_simple(text)):
            chunks.append(
                Chunk(
                    text=text[start:end],
                    page_number=page_for_offset(pages, start),
                    chunk_index=chunk_index,
                    document_id=document_id,
                    start_char=start,
                    end_char=end,
                    page_end=page_for_offset(pages, end - 1),
                )
            )
        return chunks

    def extract_document(self, document_id: str, pdf_bytes: bytes) -> Document:
        """
        Validate the PDF and extract its text.

        Raises:
            ExtractionError: Encrypted, corrupted or text-less PDF
            EmptyDocumentError: Text layer present but no usable characters
            PageLimitExceededError: Too many pages
        """
        validation = validate_pdf_bytes(pdf_bytes, self.max_pages)
        pages_data, has_text_layer, title_count = extract_text_from_pdf(pdf_bytes)

        if not has_text_layer:
            raise ExtractionError(
                "PDF contains no extractable text (it may be a scanned image).",
                document_id=document_id,
            )

        text, spans = join_pages(pages_data, self.page_separator)
        if not text:
            raise EmptyDocumentError(
                "PDF text extraction yielded no usable characters.", document_id=document_id
            )

        return Document(
            document_id=document_id,
            source_bytes=pdf_bytes,
            text=text,
            pages=spans,
            page_count=validation.get("page_count", len(pages_data)),
            content_hash=hashlib.sha256(pdf_bytes).hexdigest(),
            title_count=title_count,
        )

    def ingest(self, document_id: str, pdf_bytes: bytes) -> IngestedDocument:
        """
        Extract and chunk a PDF. Does not touch the index.

        Args:
            document_id: Unique document identifier
            pdf_bytes: Raw PDF content

        Returns:
            IngestedDocument with the document and its ordered chunks
        """
        with tracer.start_as_current_span("rag.ingest") as span:
            span.set_attribute("rag.document_id", document_id)

            document = self.extract_document(document_id, pdf_bytes)
            chunks = self.build_chunks(document.text, document.pages, document_id)

            span.set_attribute("rag.chunk_count", len(chunks))
            logger.info(
                f"Extracted {len(document.text):,} characters from {document.page_count} pages, "
                f"created {len(chunks)} chunks",
                extra={"document_id": document_id, "chunk_count": len(chunks)},
            )
            return IngestedDocument(document=document, chunks=tuple(chunks))
