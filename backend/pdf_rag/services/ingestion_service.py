"""Ingestion pipeline: validate, extract, chunk and index a PDF."""
import hashlib
import threading
import time
from typing import Dict, Optional

from pdf_rag.exceptions import ConcurrentIndexInProgress, RAGError
from pdf_rag.models.document import IndexEntry, IngestionJob, IngestionResult, JobStatus, utc_now
from pdf_rag.services.document_processor import DocumentProcessor
from pdf_rag.services.indexer import EmbeddingIndexer
from pdf_rag.services.vector_store import InMemoryVectorStore
from pdf_rag.utils.logger import logger
from pdf_rag.utils.metrics import INGESTIONS, update_index_gauges


class IngestionService:
    """Runs document ingestions and tracks their progress."""

    def __init__(
        self,
        document_processor: DocumentProcessor,
        indexer: EmbeddingIndexer,
        vector_store: InMemoryVectorStore,
    ):
        """
        Initialize ingestion service.

        Args:
            document_processor: Extraction and chunking service
            indexer: Embedding indexer writing into vector_store
            vector_store: Vector store holding indexed documents
        """
        self.document_processor = document_processor
        self.indexer = indexer
        self.vector_store = vector_store
        self._jobs: Dict[str, IngestionJob] = {}
        self._jobs_lock = threading.Lock()

    def submit(self, document_id: str) -> IngestionJob:
        """
        Register a queued job for a document.

        Raises:
            ConcurrentIndexInProgress: A job for the document is queued or running
        """
        with self._jobs_lock:
            current = self._jobs.get(document_id)
            if current is not None and current.status in JobStatus.IN_FLIGHT:
                raise ConcurrentIndexInProgress(document_id)
            job = IngestionJob(document_id=document_id)
            self._jobs[document_id] = job

        logger.info("Ingestion queued", extra={"document_id": document_id, "status": job.status})
        return job

    def get_job(self, document_id: str) -> Optional[IngestionJob]:
        return self._jobs.get(document_id)

    def jobs_in_flight(self) -> int:
        with self._jobs_lock:
            return sum(1 for job in self._jobs.values() if job.status in JobStatus.IN_FLIGHT)

    def _is_unchanged(self, existing: Optional[IndexEntry], content_hash: str) -> bool:
        if existing is None:
            return False
        return (
            existing.content_hash == content_hash
            and existing.model_id == self.indexer.embedding_provider.model_id
            and existing.chunk_size == self.document_processor.chunk_size
            and existing.chunk_overlap == self.document_processor.chunk_overlap
        )

    def ingest(self, document_id: str, pdf_bytes: bytes, force: bool = False) -> IngestionResult:
        """
        Ingest a PDF and (re)build its index entry.

        The per-document lock is held from extraction through the index swap, so
        a concurrent request for the same id is rejected rather than interleaved.

        Args:
            document_id: Caller-chosen document identifier
            pdf_bytes: Raw PDF content
            force: Re-index even if the same content is already indexed

        Returns:
            IngestionResult with status "indexed" or "unchanged"

        Raises:
            ConcurrentIndexInProgress: Another operation holds the document
            ValidationError, ExtractionError, EmptyDocumentError: Bad input
            EmbeddingProviderError: Embedding failed; prior entry stays intact
        """
        start_time = time.time()
        content_hash = hashlib.sha256(pdf_bytes).hexdigest()

        try:
            with self.vector_store.document_lock(document_id):
                existing = self.vector_store.snapshot().get(document_id)
                if not force and self._is_unchanged(existing, content_hash):
                    INGESTIONS.labels(status=JobStatus.UNCHANGED).inc()
                    logger.info(
                        "Document content unchanged, skipping re-index",
                        extra={"document_id": document_id, "generation": existing.generation},
                    )
                    return IngestionResult(
                        document_id=document_id,
                        status=JobStatus.UNCHANGED,
                        chunk_count=existing.chunk_count,
                        page_count=existing.page_count,
                        generation=existing.generation,
                        processing_time_seconds=time.time() - start_time,
                    )

                ingested = self.document_processor.ingest(document_id, pdf_bytes)
                entry = self.indexer.index(
                    document_id,
                    ingested.chunks,
                    document=ingested.document,
                    chunk_size=self.document_processor.chunk_size,
                    chunk_overlap=self.document_processor.chunk_overlap,
                )
        except RAGError as e:
            INGESTIONS.labels(status=JobStatus.FAILED).inc()
            logger.warning(
                f"Ingestion failed: {str(e)}",
                extra={"document_id": document_id, "status": JobStatus.FAILED},
            )
            raise

        processing_time = time.time() - start_time
        INGESTIONS.labels(status=JobStatus.INDEXED).inc()
        logger.info(
            f"Document ingested successfully: {document_id}",
            extra={
                "document_id": document_id,
                "chunk_count": entry.chunk_count,
                "generation": entry.generation,
                "duration_ms": round(processing_time * 1000, 1),
                "status": JobStatus.INDEXED,
            },
        )
        return IngestionResult(
            document_id=document_id,
            status=JobStatus.INDEXED,
            chunk_count=entry.chunk_count,
            page_count=entry.page_count,
            generation=entry.generation,
            processing_time_seconds=processing_time,
        )

    def run_job(self, document_id: str, pdf_bytes: bytes, force: bool = False) -> IngestionJob:
        """
        Background entry point: run ingest and record the outcome on the job.

        Domain errors end up on the job record instead of propagating, since no
        caller is waiting on a background task.
        """
        job = self._jobs.get(document_id)
        if job is None:
            job = self.submit(document_id)
        job.status = JobStatus.RUNNING
        job.started_at = utc_now()

        try:
            result = self.ingest(document_id, pdf_bytes, force=force)
        except RAGError as e:
            job.status = JobStatus.FAILED
            job.error_type = type(e).__name__
            job.error = str(e)
        except Exception as e:
            logger.error(f"Unexpected ingestion error: {str(e)}", exc_info=True, extra={"document_id": document_id})
            job.status = JobStatus.FAILED
            job.error_type = type(e).__name__
            job.error = str(e)
        else:
            job.status = result.status
            job.chunk_count = result.chunk_count
            job.page_count = result.page_count
            job.generation = result.generation
        finally:
            job.finished_at = utc_now()

        return job

    def delete_document(self, document_id: str) -> None:
        """
        Remove a document from the index and forget its job record.

        Raises:
            NotIndexed: Document is not indexed
            ConcurrentIndexInProgress: Document is being ingested
        """
        # submit() takes the same lock, so no job can be queued between check and pop
        with self._jobs_lock:
            job = self._jobs.get(document_id)
            if job is not None and job.status in JobStatus.IN_FLIGHT:
                raise ConcurrentIndexInProgress(document_id)

            self.vector_store.delete_document(document_id)
            self._jobs.pop(document_id, None)
        update_index_gauges(self.vector_store.snapshot())

