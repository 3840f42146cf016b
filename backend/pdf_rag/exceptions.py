"""Custom exception classes for the PDF RAG core."""


class RAGError(Exception):
    """Base exception for all document ingestion, indexing and retrieval errors."""

    def __init__(self, message: str, document_id: str = None):
        super().__init__(message)
        self.document_id = document_id


class ValidationError(RAGError):
    """Raised when an uploaded document fails validation."""
    pass


class FileTypeNotSupportedError(ValidationError):
    """Raised when an unsupported file type is encountered."""
    pass


class FileSizeExceededError(ValidationError):
    """Raised when file size exceeds the maximum allowed."""
    pass


class PageLimitExceededError(ValidationError):
    """Raised when document exceeds maximum page limit."""
    pass


class ExtractionError(RAGError):
    """Raised when the PDF is encrypted, corrupted or has no extractable text."""
    pass


class EmptyDocumentError(RAGError):
    """Raised when extraction succeeds but yields zero usable characters."""
    pass


class EmbeddingProviderError(RAGError):
    """Raised when the embedding provider fails, times out or returns bad vectors."""
    pass


class IndexStateError(RAGError):
    """Base class for errors about the state of the in-memory index."""
    pass


class NotIndexed(IndexStateError):
    """Raised when retrieval targets a document id with no index entry."""

    def __init__(self, document_ids):
        if isinstance(document_ids, str):
            document_ids = [document_ids]
        self.missing_ids = list(document_ids)
        super().__init__(
            f"Document(s) not indexed: {', '.join(self.missing_ids)}",
            document_id=self.missing_ids[0] if len(self.missing_ids) == 1 else None,
        )


class ConcurrentIndexInProgress(IndexStateError):
    """Raised when an ingestion or indexing operation is already in flight for a document."""

    def __init__(self, document_id: str):
        super().__init__(
            f"An indexing operation is already in progress for document {document_id}",
            document_id=document_id,
        )


class EmbeddingModelMismatchError(IndexStateError):
    """Raised when vectors from a different embedding model or dimension meet the index."""
    pass
