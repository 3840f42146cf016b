"""Mapping from domain exceptions to HTTP errors."""
from fastapi import HTTPException

from pdf_rag.exceptions import (
    ConcurrentIndexInProgress,
    EmbeddingModelMismatchError,
    EmbeddingProviderError,
    EmptyDocumentError,
    ExtractionError,
    FileSizeExceededError,
    NotIndexed,
    RAGError,
    ValidationError,
)


def to_http_exception(error: RAGError) -> HTTPException:
    """Convert a RAGError into the HTTPException a route should raise."""
    if isinstance(error, FileSizeExceededError):
        return HTTPException(status_code=413, detail=str(error))
    elif isinstance(error, (ValidationError, ExtractionError, EmptyDocumentError)):
        return HTTPException(status_code=400, detail=str(error))
    elif isinstance(error, NotIndexed):
        return HTTPException(status_code=404, detail=str(error))
    elif isinstance(error, ConcurrentIndexInProgress):
        return HTTPException(status_code=409, detail=str(error))
    elif isinstance(error, EmbeddingProviderError):
        return HTTPException(status_code=502, detail=str(error))
    elif isinstance(error, EmbeddingModelMismatchError):
        return HTTPException(status_code=500, detail=str(error))
    return HTTPException(status_code=500, detail=f"Document operation failed: {str(error)}")
