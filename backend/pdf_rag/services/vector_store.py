"""In-process vector store with per-document locking."""
import dataclasses
import itertools
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Sequence

import numpy as np

from pdf_rag.exceptions import (
    ConcurrentIndexInProgress,
    EmbeddingModelMismatchError,
    NotIndexed,
)
from pdf_rag.models.document import IndexEntry
from pdf_rag.utils.logger import logger


def normalize_rows(vectors: np.ndarray) -> np.ndarray:
    """L2-normalise each row; zero rows stay zero."""
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return vectors / norms


class InMemoryVectorStore:
    """
    Holds one immutable IndexEntry per document id for the lifetime of the process.

    Writers serialise per document through ``document_lock``; readers take a
    reference to the current entry and never wait on a writer.
    """

    def __init__(self, model_id: str):
        """
        Args:
            model_id: Identifier of the only embedding model this store accepts
        """
        self.model_id = model_id
        self.dimension: Optional[int] = None

        self._entries: Dict[str, IndexEntry] = {}
        self._entries_lock = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_lock = threading.Lock()
        self._generations = itertools.count(1)
        logger.info("Vector store initialized", extra={"model_id": model_id})

    def _lock_for(self, document_id: str) -> threading.RLock:
        with self._locks_lock:
            lock = self._locks.get(document_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[document_id] = lock
            return lock

    @contextmanager
    def document_lock(self, document_id: str) -> Iterator[None]:
        """
        Hold the exclusive write lock for a document id.

        Re-entrant for the owning thread, so a pipeline holding the lock can
        call the indexer which takes it again.

        Raises:
            ConcurrentIndexInProgress: If another thread holds the lock
        """
        lock = self._lock_for(document_id)
        if not lock.acquire(blocking=False):
            raise ConcurrentIndexInProgress(document_id)
        try:
            yield
        finally:
            lock.release()

    def replace(self, entry: IndexEntry) -> IndexEntry:
        """
        Install a fully built entry, replacing any previous one for its document.

        Args:
            entry: Complete entry for one document

        Returns:
            The stored entry, stamped with a fresh generation

        Raises:
            EmbeddingModelMismatchError: Wrong model id or vector dimension
        """
        if entry.model_id != self.model_id:
            raise EmbeddingModelMismatchError(
                f"Index is pinned to embedding model {self.model_id!r}, got {entry.model_id!r}",
                document_id=entry.document_id,
            )

        with self._entries_lock:
            if self.dimension is None:
                self.dimension = entry.dimension
            elif entry.dimension != self.dimension:
                raise EmbeddingModelMismatchError(
                    f"Index holds {self.dimension}-dimensional vectors, got {entry.dimension}",
                    document_id=entry.document_id,
                )

            stored = dataclasses.replace(entry, generation=next(self._generations))
            self._entries[entry.document_id] = stored

        logger.info(
            f"Stored {stored.chunk_count} chunks",
            extra={
                "document_id": stored.document_id,
                "chunk_count": stored.chunk_count,
                "generation": stored.generation,
            },
        )
        return stored

    def get(self, document_id: str) -> IndexEntry:
        """
        Return the current entry for a document.

        Raises:
            NotIndexed: If the document has no entry
        """
        entry = self._entries.get(document_id)
        if entry is None:
            raise NotIndexed(document_id)
        return entry

    def get_many(self, document_ids: Sequence[str]) -> List[IndexEntry]:
        """
        Return entries for several documents, in request order.

        Raises:
            NotIndexed: Listing every requested id without an entry
        """
        entries = dict(self._entries)
        missing = [document_id for document_id in document_ids if document_id not in entries]
        if missing:
            raise NotIndexed(missing)
        return [entries[document_id] for document_id in document_ids]

    def document_exists(self, document_id: str) -> bool:
        return document_id in self._entries

    def delete_document(self, document_id: str) -> None:
        """
        Remove a document's entry.

        Raises:
            NotIndexed: If the document has no entry
            ConcurrentIndexInProgress: If the document is being indexed
        """
        with self.document_lock(document_id):
            with self._entries_lock:
                if self._entries.pop(document_id, None) is None:
                    raise NotIndexed(document_id)
        logger.info("Deleted document from vector store", extra={"document_id": document_id})

    def snapshot(self) -> Dict[str, IndexEntry]:
        """Shallow copy of the current entries for read-only aggregation."""
        return dict(self._entries)
