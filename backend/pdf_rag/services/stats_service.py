"""Read-only statistics over the vector store."""
from typing import Optional, TYPE_CHECKING

from pdf_rag.models.document import DocumentSummary, IndexStats
from pdf_rag.services.vector_store import InMemoryVectorStore

if TYPE_CHECKING:
    from pdf_rag.services.ingestion_service import IngestionService
    from pdf_rag.services.retrieval_service import Retriever


class StatsService:
    """Aggregates index size and health figures without taking any document lock."""

    def __init__(
        self,
        store: InMemoryVectorStore,
        retriever: Optional["Retriever"] = None,
        ingestion_service: Optional["IngestionService"] = None,
    ):
        self.store = store
        self.retriever = retriever
        self.ingestion_service = ingestion_service

    def get_stats(self) -> IndexStats:
        """
        Build an IndexStats report from a snapshot of the store.

        A concurrent re-index may leave the figures one generation behind.
        """
        entries = self.store.snapshot()

        total_chunks = sum(entry.chunk_count for entry in entries.values())
        total_chars = sum(len(chunk.text) for entry in entries.values() for chunk in entry.chunks)

        documents = [
            DocumentSummary(
                document_id=entry.document_id,
                chunk_count=entry.chunk_count,
                page_count=entry.page_count,
                generation=entry.generation,
                indexed_at=entry.indexed_at,
                title_count=entry.title_count,
            )
            for entry in sorted(entries.values(), key=lambda e: e.document_id)
        ]

        return IndexStats(
            document_count=len(entries),
            total_chunks=total_chunks,
            vector_memory_bytes=sum(entry.vector_bytes for entry in entries.values()),
            embedding_model=self.store.model_id,
            dimension=self.store.dimension,
            total_pages=sum(entry.page_count for entry in entries.values()),
            average_chunk_length=round(total_chars / total_chunks, 1) if total_chunks else 0.0,
            title_count=sum(entry.title_count for entry in entries.values()),
            jobs_in_flight=self.ingestion_service.jobs_in_flight() if self.ingestion_service else 0,
            cache=self.retriever.cache_stats() if self.retriever else {},
            documents=documents,
        )
