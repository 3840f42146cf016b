"""Retrieval service: top-K cosine search over indexed documents."""
import threading
import time
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from opentelemetry import trace

from pdf_rag.exceptions import EmbeddingModelMismatchError, EmbeddingProviderError, NotIndexed
from pdf_rag.models.document import IndexEntry, QueryResult
from pdf_rag.services.embedding_service import EmbeddingProvider
from pdf_rag.services.vector_store import InMemoryVectorStore
from pdf_rag.utils.logger import logger
from pdf_rag.utils.metrics import RETRIEVAL_SECONDS, RETRIEVALS

tracer = trace.get_tracer(__name__)

CacheKey = Tuple[Tuple[str, ...], Tuple[int, ...], str, int]


def relevance_label(score: float) -> str:
    """Human-readable bucket for a cosine similarity score."""
    if score > 0.7:
        return "high"
    if score > 0.4:
        return "medium"
    if score > 0.2:
        return "low"
    return "weak"


class SearchCache:
    """Small thread-safe LRU cache of retrieval results."""

    def __init__(self, max_size: int = 50):
        self.max_size = max_size
        self.hits = 0
        self.misses = 0
        self._items: "OrderedDict[CacheKey, List[QueryResult]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: CacheKey) -> Optional[List[QueryResult]]:
        with self._lock:
            results = self._items.get(key)
            if results is None:
                self.misses += 1
                return None
            self._items.move_to_end(key)
            self.hits += 1
            return list(results)

    def put(self, key: CacheKey, results: List[QueryResult]) -> None:
        if self.max_size <= 0:
            return
        with self._lock:
            self._items[key] = list(results)
            self._items.move_to_end(key)
            while len(self._items) > self.max_size:
                self._items.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "size": len(self._items),
                "max_size": self.max_size,
                "hits": self.hits,
                "misses": self.misses,
            }


class Retriever:
    """Answers top-K similarity queries against one or more indexed documents."""

    def __init__(
        self,
        store: InMemoryVectorStore,
        embedding_provider: EmbeddingProvider,
        default_top_k: int = 5,
        cache_size: int = 50,
    ):
        """
        Args:
            store: Vector store holding the indexed documents
            embedding_provider: Provider used for query embeddings; must be the
                                model the store is pinned to
            default_top_k: K used when the caller passes none
            cache_size: Maximum number of cached result lists (0 disables caching)

        Raises:
            EmbeddingModelMismatchError: Provider and store use different models
        """
        if embedding_provider.model_id != store.model_id:
            raise EmbeddingModelMismatchError(
                f"Query embeddings from {embedding_provider.model_id!r} cannot search an index "
                f"built with {store.model_id!r}"
            )
        self.store = store
        self.embedding_provider = embedding_provider
        self.default_top_k = default_top_k
        self.cache = SearchCache(cache_size)

    def _embed_query(self, query: str) -> np.ndarray:
        try:
            vector = self.embedding_provider.embed(query)
        except EmbeddingProviderError:
            raise
        except Exception as e:
            raise EmbeddingProviderError(f"Query embedding failed: {str(e)}") from e

        query_vector = np.asarray(vector, dtype=np.float32)
        norm = np.linalg.norm(query_vector)
        if norm > 0:
            query_vector = query_vector / norm
        return query_vector

    @staticmethod
    def _rank(
        entries: List[IndexEntry], query_vector: np.ndarray, top_k: int
    ) -> List[QueryResult]:
        """Score every chunk and keep the best K, ties by request order then chunk order."""
        scores = []
        doc_positions = []
        chunk_positions = []
        for position, entry in enumerate(entries):
            if entry.dimension != query_vector.shape[0]:
                raise EmbeddingModelMismatchError(
                    f"Query vector has {query_vector.shape[0]} dimensions, "
                    f"index has {entry.dimension}",
                    document_id=entry.document_id,
                )
            scores.append(entry.embeddings @ query_vector)
            doc_positions.append(np.full(entry.chunk_count, position))
            chunk_positions.append(np.arange(entry.chunk_count))

        all_scores = np.concatenate(scores)
        all_docs = np.concatenate(doc_positions)
        all_chunks = np.concatenate(chunk_positions)

        # lexsort sorts by the last key first
        order = np.lexsort((all_chunks, all_docs, -all_scores))[:top_k]

        results = []
        for i in order:
            entry = entries[int(all_docs[i])]
            score = float(all_scores[i])
            results.append(
                QueryResult(
                    chunk=entry.chunks[int(all_chunks[i])],
                    score=score,
                    relevance=relevance_label(score),
                )
            )
        return results

    def retrieve(
        self,
        document_ids: Union[str, Sequence[str]],
        query: str,
        top_k: Optional[int] = None,
    ) -> List[QueryResult]:
        """
        Return the chunks most similar to the query.

        Args:
            document_ids: One document id, or several for cross-document search
            query: Natural-language query
            top_k: Maximum number of results (default: configured top_k)

        Returns:
            Up to top_k QueryResults, descending by score

        Raises:
            ValueError: Empty query, no document ids or top_k < 1
            NotIndexed: Any requested document has no index entry
            EmbeddingProviderError: Query embedding failed
        """
        if isinstance(document_ids, str):
            document_ids = [document_ids]
        document_ids = list(dict.fromkeys(document_ids))
        top_k = self.default_top_k if top_k is None else top_k

        if not document_ids:
            raise ValueError("At least one document id is required")
        if top_k < 1:
            raise ValueError(f"top_k must be at least 1, got {top_k}")
        normalized_query = " ".join(query.split()) if query else ""
        if not normalized_query:
            raise ValueError("Query cannot be empty")

        start_time = time.time()
        with tracer.start_as_current_span("rag.retrieve") as span, RETRIEVAL_SECONDS.time():
            span.set_attribute("rag.document_count", len(document_ids))
            span.set_attribute("rag.top_k", top_k)

            try:
                entries = self.store.get_many(document_ids)
            except NotIndexed:
                RETRIEVALS.labels(outcome="not_indexed").inc()
                raise

            cache_key = (
                tuple(document_ids),
                tuple(entry.generation for entry in entries),
                normalized_query,
                top_k,
            )
            cached = self.cache.get(cache_key)
            if cached is not None:
                RETRIEVALS.labels(outcome="cache_hit").inc()
                return cached

            try:
                query_vector = self._embed_query(normalized_query)
            except EmbeddingProviderError:
                RETRIEVALS.labels(outcome="provider_error").inc()
                raise

            results = self._rank(entries, query_vector, top_k)
            self.cache.put(cache_key, results)
            RETRIEVALS.labels(outcome="ok").inc()

        logger.info(
            f"Retrieved {len(results)} chunks from {len(document_ids)} document(s)",
            extra={
                "document_id": document_ids[0] if len(document_ids) == 1 else None,
                "top_k": top_k,
                "similarity_scores": [round(r.score, 4) for r in results],
                "duration_ms": round((time.time() - start_time) * 1000, 1),
            },
        )
        return results

    def clear_cache(self) -> None:
        """Drop every cached result list."""
        self.cache.clear()
        logger.info("Search cache cleared")

    def cache_stats(self) -> Dict[str, int]:
        return self.cache.stats()
