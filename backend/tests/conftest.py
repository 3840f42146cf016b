"""Pytest configuration and fixtures."""
import hashlib
import re
import threading
import time
from typing import Dict, List, Optional, Sequence

import fitz
import pytest

from pdf_rag.models.document import Chunk
from pdf_rag.services.document_processor import DocumentProcessor
from pdf_rag.services.embedding_service import EmbeddingProvider
from pdf_rag.services.indexer import EmbeddingIndexer
from pdf_rag.services.ingestion_service import IngestionService
from pdf_rag.services.retrieval_service import Retriever
from pdf_rag.services.stats_service import StatsService
from pdf_rag.services.vector_store import InMemoryVectorStore

DIMENSION = 64


class HashingEmbeddingProvider(EmbeddingProvider):
    """Deterministic bag-of-words embeddings; texts sharing words score higher."""

    def __init__(self, model_id: str = "test-hashing", dimension: int = DIMENSION):
        self.model_id = model_id
        self.dimension = dimension
        self.calls: List[List[str]] = []

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        vectors = []
        for text in texts:
            vector = [0.0] * self.dimension
            for word in re.findall(r"\w+", text.lower()):
                bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % self.dimension
                vector[bucket] += 1.0
            vectors.append(vector)
        return vectors


class StaticEmbeddingProvider(EmbeddingProvider):
    """Returns hand-picked vectors by exact text; unknown texts raise KeyError."""

    def __init__(self, vectors: Dict[str, Sequence[float]], model_id: str = "test-hashing"):
        self.model_id = model_id
        self.vectors = vectors

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [list(self.vectors[text]) for text in texts]


class FailingEmbeddingProvider(EmbeddingProvider):
    """Fails every call after the first ``succeed_calls`` calls."""

    def __init__(self, succeed_calls: int = 0, model_id: str = "test-hashing"):
        self.model_id = model_id
        self.succeed_calls = succeed_calls
        self._delegate = HashingEmbeddingProvider(model_id=model_id)
        self._calls = 0
        self._lock = threading.Lock()

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        with self._lock:
            self._calls += 1
            failing = self._calls > self.succeed_calls
        if failing:
            raise RuntimeError("embedding backend unavailable")
        return self._delegate.embed_batch(texts)


class SlowEmbeddingProvider(EmbeddingProvider):
    """Hashing embeddings that take ``delay`` seconds per call."""

    def __init__(self, delay: float, model_id: str = "test-hashing"):
        self.model_id = model_id
        self.delay = delay
        self.started = threading.Event()
        self._delegate = HashingEmbeddingProvider(model_id=model_id)

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.started.set()
        time.sleep(self.delay)
        return self._delegate.embed_batch(texts)


class GatedEmbeddingProvider(EmbeddingProvider):
    """Hashing embeddings that block until ``release`` is set."""

    def __init__(self, model_id: str = "test-hashing"):
        self.model_id = model_id
        self.entered = threading.Event()
        self.release = threading.Event()
        self._delegate = HashingEmbeddingProvider(model_id=model_id)

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.entered.set()
        if not self.release.wait(5):
            raise RuntimeError("gate never opened")
        return self._delegate.embed_batch(texts)


def make_pdf(pages: Sequence[Optional[str]], encrypt: bool = False) -> bytes:
    """Build a PDF in memory; ``None`` pages are left without any text."""
    doc = fitz.open()
    try:
        for text in pages:
            page = doc.new_page()
            if text:
                page.insert_text((72, 72), text, fontsize=11)
        if encrypt:
            return doc.tobytes(
                encryption=fitz.PDF_ENCRYPT_AES_256,
                owner_pw="owner-secret",
                user_pw="user-secret",
            )
        return doc.tobytes()
    finally:
        doc.close()


def make_chunks(document_id: str, texts: Sequence[str]) -> List[Chunk]:
    """Contiguous chunks over the given texts, all on page 1."""
    chunks = []
    offset = 0
    for index, text in enumerate(texts):
        chunks.append(
            Chunk(
                text=text,
                page_number=1,
                chunk_index=index,
                document_id=document_id,
                start_char=offset,
                end_char=offset + len(text),
                page_end=1,
            )
        )
        offset += len(text)
    return chunks


@pytest.fixture
def embedding_provider():
    """Deterministic embedding provider."""
    return HashingEmbeddingProvider()


@pytest.fixture
def vector_store():
    """Empty store pinned to the test model."""
    return InMemoryVectorStore(model_id="test-hashing")


@pytest.fixture
def indexer(vector_store, embedding_provider):
    """Indexer with small batches so multi-batch paths are exercised."""
    return EmbeddingIndexer(vector_store, embedding_provider, batch_size=2, max_workers=2, timeout_seconds=5)


@pytest.fixture
def retriever(vector_store, embedding_provider):
    return Retriever(vector_store, embedding_provider, default_top_k=5, cache_size=8)


@pytest.fixture
def document_processor():
    """Processor with small chunks for multi-chunk documents."""
    return DocumentProcessor(chunk_size=40, chunk_overlap=10, max_pages=20)


@pytest.fixture
def ingestion_service(document_processor, indexer, vector_store):
    return IngestionService(document_processor, indexer, vector_store)


@pytest.fixture
def stats_service(vector_store, retriever, ingestion_service):
    return StatsService(vector_store, retriever=retriever, ingestion_service=ingestion_service)


@pytest.fixture
def sample_chunks():
    """Sample document chunks for testing."""
    return make_chunks(
        "test-doc-1",
        [
            "Revenue grew strongly in the third quarter.",
            "The board approved a new dividend policy.",
            "Employee headcount remained flat year over year.",
        ],
    )


@pytest.fixture
def sample_pdf_content():
    """Three-page PDF with a text layer on every page."""
    return make_pdf(
        [
            "Quarterly revenue grew twelve percent in Europe.",
            "The board approved a dividend of two euros per share.",
            "Headcount stayed flat while hiring focused on engineering.",
        ]
    )
