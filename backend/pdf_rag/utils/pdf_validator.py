"""PDF validation utilities run before text extraction."""
from typing import Any, Dict, Optional

import fitz  # PyMuPDF

from pdf_rag.exceptions import (
    ExtractionError,
    FileSizeExceededError,
    FileTypeNotSupportedError,
    PageLimitExceededError,
)


SUPPORTED_EXTENSIONS = [".pdf"]
MIN_PDF_SIZE = 64


class PDFValidator:
    """Validation of raw PDF bytes using PyMuPDF."""

    @staticmethod
    def validate_file_type(filename: Optional[str]) -> str:
        """Validate the upload's extension and return it."""
        if not filename:
            raise FileTypeNotSupportedError("File name is required.")

        extension = "." + filename.lower().rsplit(".", 1)[-1] if "." in filename else ""
        if extension not in SUPPORTED_EXTENSIONS:
            raise FileTypeNotSupportedError(
                f"Unsupported file type. Supported formats: {', '.join(SUPPORTED_EXTENSIONS)}"
            )
        return extension

    @staticmethod
    def validate_file_size(file_size_bytes: int, max_size_mb: float) -> None:
        """Validate file size."""
        file_size_mb = file_size_bytes / (1024 * 1024)
        if file_size_mb > max_size_mb:
            raise FileSizeExceededError(
                f"File size ({file_size_mb:.2f} MB) exceeds maximum allowed size ({max_size_mb} MB)."
            )

    @staticmethod
    def validate_pdf_header(pdf_bytes: bytes) -> Dict[str, Any]:
        """
        Validate PDF header and trailer markers.

        Args:
            pdf_bytes: Raw PDF content

        Returns:
            Dictionary with version and file size

        Raises:
            ExtractionError: If the bytes are not a complete PDF
        """
        if not pdf_bytes.startswith(b"%PDF-"):
            raise ExtractionError("File is not a valid PDF. PDF files must start with '%PDF-' header.")

        file_size = len(pdf_bytes)
        if file_size < MIN_PDF_SIZE:
            raise ExtractionError(f"PDF file is too small ({file_size} bytes).")

        if b"%%EOF" not in pdf_bytes[-1024:]:
            raise ExtractionError("PDF file is corrupted or incomplete. Missing '%%EOF' marker.")

        try:
            pdf_version = pdf_bytes[5:8].decode("ascii")
        except UnicodeDecodeError:
            pdf_version = "unknown"

        return {"version": pdf_version, "file_size": file_size}

    @staticmethod
    def validate_pdf_structure(pdf_bytes: bytes, max_pages: int = 1000) -> Dict[str, Any]:
        """
        Validate PDF document structure using PyMuPDF.

        Args:
            pdf_bytes: Raw PDF content
            max_pages: Maximum allowed pages

        Returns:
            Dictionary with page count

        Raises:
            ExtractionError: If the PDF cannot be opened, is encrypted or has no pages
            PageLimitExceededError: If the PDF has more than max_pages pages
        """
        try:
            doc = fitz.open(stream=pdf_bytes, filetype="pdf")
        except Exception as e:
            raise ExtractionError(
                f"PDF structure validation failed: {str(e)}. The PDF may be corrupted."
            ) from e

        try:
            if doc.needs_pass or doc.is_encrypted:
                raise ExtractionError(
                    "PDF is password-protected or encrypted. Please provide an unprotected PDF file."
                )

            page_count = doc.page_count
            if page_count == 0:
                raise ExtractionError("PDF contains no pages.")

            if page_count > max_pages:
                raise PageLimitExceededError(
                    f"PDF has {page_count} pages, which exceeds the maximum of {max_pages} pages."
                )

            return {"page_count": page_count}
        finally:
            doc.close()


def validate_pdf_bytes(pdf_bytes: bytes, max_pages: int = 1000) -> Dict[str, Any]:
    """
    Run header and structure validation on an uploaded PDF.

    Returns:
        Combined validation results

    Raises:
        ExtractionError, PageLimitExceededError
    """
    header_info = PDFValidator.validate_pdf_header(pdf_bytes)
    structure_info = PDFValidator.validate_pdf_structure(pdf_bytes, max_pages)
    return {**header_info, **structure_info}
