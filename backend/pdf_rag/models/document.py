"""Document, chunk and index data models."""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import numpy as np


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PageSpan:
    """Character range occupied by one PDF page inside the extracted text."""

    page_number: int
    start: int
    end: int

    def contains(self, offset: int) -> bool:
        return self.start <= offset < self.end


@dataclass(frozen=True)
class Chunk:
    """Represents a text chunk with metadata."""

    text: str
    page_number: int
    chunk_index: int
    document_id: str
    start_char: int = 0
    end_char: int = 0
    page_end: Optional[int] = None


@dataclass
class Document:
    """Represents an extracted document."""

    document_id: str
    source_bytes: bytes = field(repr=False)
    text: str
    pages: List[PageSpan]
    page_count: int
    content_hash: str
    title_count: int = 0
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class IngestedDocument:
    """Output of the ingestor: the extracted document and its ordered chunks."""

    document: Document
    chunks: Tuple[Chunk, ...]


@dataclass(frozen=True)
class IndexEntry:
    """
    Immutable index record for one document.

    ``embeddings`` holds one L2-normalised row per chunk, in chunk order.
    The entry is swapped into the store as a whole, so readers holding a
    reference always see a consistent chunk set.
    """

    document_id: str
    chunks: Tuple[Chunk, ...]
    embeddings: np.ndarray = field(repr=False)
    model_id: str
    dimension: int
    page_count: int = 0
    text_length: int = 0
    content_hash: Optional[str] = None
    chunk_size: Optional[int] = None
    chunk_overlap: Optional[int] = None
    title_count: int = 0
    generation: int = 0
    indexed_at: datetime = field(default_factory=utc_now)

    @property
    def chunk_count(self) -> int:
        return len(self.chunks)

    @property
    def vector_bytes(self) -> int:
        return int(self.embeddings.nbytes)


@dataclass(frozen=True)
class QueryResult:
    """A retrieved chunk with its similarity score."""

    chunk: Chunk
    score: float
    relevance: str

    @property
    def document_id(self) -> str:
        return self.chunk.document_id


@dataclass
class DocumentSummary:
    """Per-document line of the stats report."""

    document_id: str
    chunk_count: int
    page_count: int
    generation: int
    indexed_at: datetime
    title_count: int = 0


@dataclass
class IndexStats:
    """Read-only aggregate view over the index."""

    document_count: int
    total_chunks: int
    vector_memory_bytes: int
    embedding_model: str
    dimension: Optional[int]
    total_pages: int
    average_chunk_length: float
    title_count: int = 0
    jobs_in_flight: int = 0
    cache: dict = field(default_factory=dict)
    documents: List[DocumentSummary] = field(default_factory=list)


class JobStatus:
    """Lifecycle states of an ingestion job."""

    QUEUED = "queued"
    RUNNING = "running"
    INDEXED = "indexed"
    UNCHANGED = "unchanged"
    FAILED = "failed"

    IN_FLIGHT = (QUEUED, RUNNING)


@dataclass
class IngestionJob:
    """Progress record for one background ingestion."""

    document_id: str
    status: str = JobStatus.QUEUED
    submitted_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    chunk_count: Optional[int] = None
    page_count: Optional[int] = None
    generation: Optional[int] = None
    error_type: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class IngestionResult:
    """Outcome of a completed ingestion."""

    document_id: str
    status: str
    chunk_count: int
    page_count: int
    generation: int
    processing_time_seconds: float
