"""Embedding indexer: turns a chunk list into a stored IndexEntry."""
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import List, Optional, Sequence

import numpy as np
from opentelemetry import trace

from pdf_rag.exceptions import EmbeddingProviderError
from pdf_rag.models.document import Chunk, Document, IndexEntry
from pdf_rag.services.embedding_service import EmbeddingProvider
from pdf_rag.services.vector_store import InMemoryVectorStore, normalize_rows
from pdf_rag.utils.logger import logger
from pdf_rag.utils.metrics import EMBEDDING_BATCH_SECONDS, update_index_gauges

tracer = trace.get_tracer(__name__)


def _timed_embed(provider: EmbeddingProvider, texts: List[str]) -> List[List[float]]:
    with EMBEDDING_BATCH_SECONDS.time():
        return provider.embed_batch(texts)


class EmbeddingIndexer:
    """Computes chunk embeddings and swaps complete entries into the store."""

    def __init__(
        self,
        store: InMemoryVectorStore,
        embedding_provider: EmbeddingProvider,
        batch_size: int = 64,
        max_workers: int = 4,
        timeout_seconds: float = 60.0,
    ):
        """
        Args:
            store: Vector store receiving the entries
            embedding_provider: Provider producing chunk vectors
            batch_size: Number of chunk texts per provider call
            max_workers: Concurrent provider calls per indexed document
            timeout_seconds: Time limit for each provider call
        """
        if embedding_provider.model_id != store.model_id:
            logger.warning(
                f"Embedding provider {embedding_provider.model_id!r} does not match "
                f"store model {store.model_id!r}; every write will be rejected"
            )
        self.store = store
        self.embedding_provider = embedding_provider
        self.batch_size = max(1, batch_size)
        self.max_workers = max(1, max_workers)
        self.timeout_seconds = timeout_seconds

    @staticmethod
    def _validate_chunks(document_id: str, chunks: Sequence[Chunk]) -> None:
        if not chunks:
            raise ValueError(f"Cannot index document {document_id} without chunks")
        for position, chunk in enumerate(chunks):
            if chunk.document_id != document_id:
                raise ValueError(
                    f"Chunk {chunk.chunk_index} belongs to {chunk.document_id}, not {document_id}"
                )
            if chunk.chunk_index != position:
                raise ValueError(
                    f"Chunk sequence broken for {document_id}: expected index {position}, "
                    f"got {chunk.chunk_index}"
                )

    def embed_chunks(self, document_id: str, chunks: Sequence[Chunk]) -> np.ndarray:
        """
        Embed chunk texts in parallel batches, keeping chunk order.

        Each call gets its own worker pool, so one document's batches never
        queue behind another's and the timeout only covers this document's work.

        Returns:
            (n_chunks, dimension) float32 matrix of raw vectors

        Raises:
            EmbeddingProviderError: Provider failure, timeout or malformed output
        """
        texts = [chunk.text for chunk in chunks]
        batches = [texts[i:i + self.batch_size] for i in range(0, len(texts), self.batch_size)]
        executor = ThreadPoolExecutor(
            max_workers=max(1, min(self.max_workers, len(batches))),
            thread_name_prefix=f"embed-{document_id}",
        )
        futures = [executor.submit(_timed_embed, self.embedding_provider, batch) for batch in batches]

        vectors: List[List[float]] = []
        try:
            for batch_idx, (batch, future) in enumerate(zip(batches, futures)):
                try:
                    result = future.result(timeout=self.timeout_seconds)
                except FutureTimeoutError as e:
                    raise EmbeddingProviderError(
                        f"Embedding batch {batch_idx + 1}/{len(batches)} timed out "
                        f"after {self.timeout_seconds}s",
                        document_id=document_id,
                    ) from e
                except EmbeddingProviderError:
                    raise
                except Exception as e:
                    raise EmbeddingProviderError(
                        f"Embedding batch {batch_idx + 1}/{len(batches)} failed: {str(e)}",
                        document_id=document_id,
                    ) from e

                if len(result) != len(batch):
                    raise EmbeddingProviderError(
                        f"Provider returned {len(result)} vectors for {len(batch)} chunks",
                        document_id=document_id,
                    )
                vectors.extend(result)
        finally:
            # a timed-out call keeps its worker; don't wait for it
            executor.shutdown(wait=False, cancel_futures=True)

        try:
            matrix = np.asarray(vectors, dtype=np.float32)
        except ValueError as e:
            raise EmbeddingProviderError(
                f"Provider returned vectors of inconsistent dimension: {str(e)}", document_id=document_id
            ) from e

        if matrix.ndim != 2 or matrix.shape[1] == 0:
            raise EmbeddingProviderError(
                f"Provider returned malformed vectors with shape {matrix.shape}", document_id=document_id
            )
        return matrix

    def index(
        self,
        document_id: str,
        chunks: Sequence[Chunk],
        document: Optional[Document] = None,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
    ) -> IndexEntry:
        """
        Embed and store a document's chunks, replacing any prior entry.

        Either the whole new chunk set becomes visible or, on failure, the old
        entry stays untouched.

        Args:
            document_id: Document identifier
            chunks: Ordered chunks of the document
            document: Extracted document, for page and hash metadata
            chunk_size: Chunk length used to produce the chunks
            chunk_overlap: Chunk overlap used to produce the chunks

        Returns:
            The stored IndexEntry

        Raises:
            ValueError: Invalid chunk list
            ConcurrentIndexInProgress: Another operation holds the document
            EmbeddingProviderError: Embedding failed
            EmbeddingModelMismatchError: Vectors do not fit the store
        """
        self._validate_chunks(document_id, chunks)

        with self.store.document_lock(document_id):
            with tracer.start_as_current_span("rag.embed") as span:
                span.set_attribute("rag.document_id", document_id)
                span.set_attribute("rag.chunk_count", len(chunks))

                start_time = time.time()
                matrix = self.embed_chunks(document_id, chunks)
                embed_ms = (time.time() - start_time) * 1000

            embeddings = normalize_rows(matrix)
            embeddings.setflags(write=False)

            entry = IndexEntry(
                document_id=document_id,
                chunks=tuple(chunks),
                embeddings=embeddings,
                model_id=self.embedding_provider.model_id,
                dimension=int(embeddings.shape[1]),
                page_count=document.page_count if document else 0,
                text_length=len(document.text) if document else sum(len(c.text) for c in chunks),
                content_hash=document.content_hash if document else None,
                chunk_size=chunk_size,
                chunk_overlap=chunk_overlap,
                title_count=document.title_count if document else 0,
            )
            stored = self.store.replace(entry)

        update_index_gauges(self.store.snapshot())

        logger.info(
            f"Indexed {stored.chunk_count} chunks",
            extra={
                "document_id": document_id,
                "chunk_count": stored.chunk_count,
                "generation": stored.generation,
                "duration_ms": round(embed_ms, 1),
                "model_id": stored.model_id,
            },
        )
        return stored
