"""Pydantic schemas for API requests and responses."""
import re
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class IngestionJobResponse(BaseModel):
    """Status of a document ingestion job."""

    document_id: str = Field(..., description="Document identifier")
    status: str = Field(..., description="queued, running, indexed, unchanged or failed")
    submitted_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    chunk_count: Optional[int] = Field(None, description="Chunks in the index entry")
    page_count: Optional[int] = Field(None, description="Pages in the document")
    generation: Optional[int] = Field(None, description="Index generation of the entry")
    error_type: Optional[str] = Field(None, description="Exception class of a failed ingestion")
    error: Optional[str] = Field(None, description="Error message of a failed ingestion")


class RetrieveRequest(BaseModel):
    """Request schema for chunk retrieval."""

    document_ids: List[str] = Field(..., min_length=1, description="Documents to search")
    query: str = Field(..., min_length=1, description="Natural-language query")
    top_k: Optional[int] = Field(None, ge=1, le=100, description="Maximum number of results")

    @field_validator("query")
    @classmethod
    def clean_query(cls, v: str) -> str:
        """
        Remove control characters and surrounding whitespace from the query.

        Raises:
            ValueError: If nothing is left after cleaning
        """
        cleaned = re.sub(r'[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F]', '', v).strip()
        if not cleaned:
            raise ValueError("Query cannot be empty after cleaning")
        return cleaned


class RetrievedChunk(BaseModel):
    """Schema for a retrieved chunk with metadata."""

    document_id: str
    chunk_index: int
    page_number: int = Field(..., description="Page on which the chunk starts")
    page_end: Optional[int] = Field(None, description="Page on which the chunk ends")
    text: str = Field(..., description="Chunk text content")
    score: float = Field(..., ge=-1.0, le=1.0, description="Cosine similarity")
    relevance: str = Field(..., description="high, medium, low or weak")


class RetrieveResponse(BaseModel):
    """Response schema for chunk retrieval."""

    query: str
    results: List[RetrievedChunk]
    response_time_ms: Optional[float] = None


class DocumentSummaryResponse(BaseModel):
    document_id: str
    chunk_count: int
    page_count: int
    generation: int
    indexed_at: datetime
    title_count: int = 0


class StatsResponse(BaseModel):
    """Response schema for index statistics."""

    document_count: int
    total_chunks: int
    vector_memory_bytes: int
    embedding_model: str
    dimension: Optional[int] = None
    total_pages: int
    average_chunk_length: float
    title_count: int = 0
    jobs_in_flight: int
    cache: Dict[str, int] = Field(default_factory=dict)
    documents: List[DocumentSummaryResponse] = Field(default_factory=list)
