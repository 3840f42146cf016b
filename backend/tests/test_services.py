"""Tests for service modules."""
import threading
import time
from types import SimpleNamespace
from unittest.mock import Mock, patch

import httpx
import numpy as np
import openai
import pytest
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.trace.export import ConsoleSpanExporter

from conftest import (
    FailingEmbeddingProvider,
    GatedEmbeddingProvider,
    HashingEmbeddingProvider,
    SlowEmbeddingProvider,
    make_chunks,
    make_pdf,
)
from pdf_rag.exceptions import (
    ConcurrentIndexInProgress,
    EmbeddingModelMismatchError,
    EmbeddingProviderError,
    EmptyDocumentError,
    ExtractionError,
    FileSizeExceededError,
    FileTypeNotSupportedError,
    NotIndexed,
    PageLimitExceededError,
)
from pdf_rag.models.document import Chunk, JobStatus
from pdf_rag.services.document_processor import DocumentProcessor
from pdf_rag.services.embedding_service import (
    OpenAIEmbeddingService,
    SentenceTransformerEmbeddingService,
    create_embedding_provider,
)
from pdf_rag.services.indexer import EmbeddingIndexer
from pdf_rag.services.retrieval_service import Retriever
from pdf_rag.services.vector_store import normalize_rows
from pdf_rag.utils.pdf_validator import PDFValidator
from pdf_rag.utils.text_cleaner import clean_text, count_titles, is_likely_title, join_pages, page_for_offset
from pdf_rag.utils.tracer import _build_exporter, initialize_tracing, shutdown_tracing


class TestTextCleaner:
    """Tests for text cleaning and page bookkeeping."""

    def test_clean_text(self):
        """Test text cleaning functionality."""
        dirty_text = "  This   has\tmultiple    spaces\n\n\n\nand newlines\x00 "
        assert clean_text(dirty_text) == "This has multiple spaces and newlines"

    def test_join_pages_skips_empty_pages(self):
        text, spans = join_pages([(1, "aaaa"), (2, ""), (3, "bbbb")])
        assert text == "aaaa bbbb"
        assert [(s.page_number, s.start, s.end) for s in spans] == [(1, 0, 4), (3, 5, 9)]

    def test_page_for_offset(self):
        _, spans = join_pages([(1, "aaaa"), (2, "bbbb")])
        assert page_for_offset(spans, 0) == 1
        assert page_for_offset(spans, 4) == 1  # separator belongs to the preceding page
        assert page_for_offset(spans, 5) == 2
        assert page_for_offset([], 10) == 1

    def test_is_likely_title(self):
        assert is_likely_title("1. Introduction")
        assert is_likely_title("2.3 Results by region")
        assert is_likely_title("Chapter 4 Outlook")
        assert is_likely_title("FINANCIAL HIGHLIGHTS")
        assert is_likely_title("Summary of findings")
        assert not is_likely_title("Revenue grew twelve percent in Europe.")
        assert not is_likely_title("AB")
        assert not is_likely_title("1. " + "x" * 120)

    def test_count_titles(self):
        raw = "1. Introduction\nRevenue grew in Europe.\nRESULTS\nThe board met twice."
        assert count_titles(raw) == 2


class TestPDFValidator:
    """Tests for upload validation."""

    def test_rejects_non_pdf_extension(self):
        with pytest.raises(FileTypeNotSupportedError):
            PDFValidator.validate_file_type("notes.txt")

    def test_accepts_pdf_extension(self):
        assert PDFValidator.validate_file_type("Report.PDF") == ".pdf"

    def test_rejects_oversized_file(self):
        with pytest.raises(FileSizeExceededError):
            PDFValidator.validate_file_size(51 * 1024 * 1024, 50)


class TestDocumentProcessor:
    """Tests for DocumentProcessor."""

    def test_chunk_windows(self):
        """Windows advance by chunk_size - overlap and keep the short tail."""
        processor = DocumentProcessor(chunk_size=4, chunk_overlap=1)
        text = "AAAA BBBB CCCC"
        chunks = [text[start:end] for start, end in processor.chunk_text_simple(text)]
        assert chunks == ["AAAA", "A BB", "BBB ", " CCC", "CC"]

    def test_chunks_reconstruct_text(self):
        processor = DocumentProcessor(chunk_size=7, chunk_overlap=3)
        text = "The quick brown fox jumps over the lazy dog."
        chunks = [text[start:end] for start, end in processor.chunk_text_simple(text)]

        rebuilt = chunks[0] + "".join(chunk[3:] for chunk in chunks[1:])
        assert rebuilt == text
        for current, following in zip(chunks, chunks[1:]):
            assert current[-3:] == following[:3]

    def test_short_and_empty_text(self):
        processor = DocumentProcessor(chunk_size=500, chunk_overlap=100)
        assert processor.chunk_text_simple("short") == [(0, 5)]
        assert processor.chunk_text_simple("") == []

    def test_invalid_parameters(self):
        with pytest.raises(ValueError):
            DocumentProcessor(chunk_size=100, chunk_overlap=100)
        with pytest.raises(ValueError):
            DocumentProcessor(chunk_size=0, chunk_overlap=0)

    def test_build_chunks_page_numbers(self):
        processor = DocumentProcessor(chunk_size=4, chunk_overlap=0)
        text, spans = join_pages([(1, "aaaa"), (2, "bbbb")])
        chunks = processor.build_chunks(text, spans, "doc")

        assert [c.text for c in chunks] == ["aaaa", " bbb", "b"]
        assert [(c.page_number, c.page_end) for c in chunks] == [(1, 1), (1, 2), (2, 2)]
        assert [c.chunk_index for c in chunks] == [0, 1, 2]
        assert all(c.document_id == "doc" for c in chunks)

    def test_ingest_pdf(self, document_processor, sample_pdf_content):
        ingested = document_processor.ingest("report", sample_pdf_content)

        assert ingested.document.page_count == 3
        assert "dividend" in ingested.document.text
        assert len(ingested.chunks) > 1
        assert [c.chunk_index for c in ingested.chunks] == list(range(len(ingested.chunks)))
        assert ingested.chunks[0].page_number == 1
        assert ingested.chunks[-1].page_end == 3
        assert {c.page_number for c in ingested.chunks} <= {1, 2, 3}
        assert ingested.document.title_count == 0

    def test_ingest_counts_titles(self, document_processor):
        pdf = make_pdf(
            [
                "1. Introduction\nRevenue grew twelve percent in Europe.",
                "RESULTS\nThe board approved a dividend.",
            ]
        )
        ingested = document_processor.ingest("report", pdf)
        assert ingested.document.title_count == 2

    def test_not_a_pdf(self, document_processor):
        with pytest.raises(ExtractionError):
            document_processor.ingest("doc", b"This is plain text pretending to be a PDF document." * 3)

    def test_truncated_pdf(self, document_processor, sample_pdf_content):
        with pytest.raises(ExtractionError):
            document_processor.ingest("doc", sample_pdf_content[: len(sample_pdf_content) // 2])

    def test_encrypted_pdf(self, document_processor):
        with pytest.raises(ExtractionError):
            document_processor.ingest("doc", make_pdf(["Secret figures"], encrypt=True))

    def test_pdf_without_text_layer(self, document_processor):
        with pytest.raises(ExtractionError):
            document_processor.ingest("doc", make_pdf([None, None]))

    def test_text_layer_without_usable_characters(self, document_processor, sample_pdf_content):
        with patch(
            "pdf_rag.services.document_processor.extract_text_from_pdf",
            return_value=([(1, ""), (2, "")], True, 0),
        ):
            with pytest.raises(EmptyDocumentError):
                document_processor.ingest("doc", sample_pdf_content)

    def test_page_limit(self, sample_pdf_content):
        processor = DocumentProcessor(chunk_size=40, chunk_overlap=10, max_pages=2)
        with pytest.raises(PageLimitExceededError):
            processor.ingest("doc", sample_pdf_content)


class TestEmbeddingProviders:
    """Tests for embedding providers (no network, no model download)."""

    def test_sentence_transformer_loads_lazily(self):
        service = SentenceTransformerEmbeddingService(model_name="sentence-transformers/all-MiniLM-L6-v2")
        assert service._model is None
        assert service.model_id == "sentence-transformers/all-MiniLM-L6-v2"

    def test_sentence_transformer_encode(self):
        service = SentenceTransformerEmbeddingService()
        service._model = Mock()
        service._model.encode = Mock(return_value=np.array([[1.0, 2.0], [3.0, 4.0]]))
        assert service.embed_batch(["a", "b"]) == [[1.0, 2.0], [3.0, 4.0]]

    def test_sentence_transformer_failure(self):
        service = SentenceTransformerEmbeddingService()
        service._model = Mock()
        service._model.encode = Mock(side_effect=RuntimeError("out of memory"))
        with pytest.raises(EmbeddingProviderError):
            service.embed_batch(["a"])

    def test_openai_orders_by_index(self):
        service = OpenAIEmbeddingService(api_key="test-key", model="text-embedding-3-small")
        service.client = Mock()
        service.client.embeddings.create.return_value = Mock(
            data=[Mock(index=1, embedding=[0.0, 1.0]), Mock(index=0, embedding=[1.0, 0.0])]
        )

        assert service.model_id == "openai:text-embedding-3-small"
        assert service.embed_batch(["first", "second"]) == [[1.0, 0.0], [0.0, 1.0]]

    def test_openai_error_is_wrapped(self):
        service = OpenAIEmbeddingService(api_key="test-key")
        service.client = Mock()
        service.client.embeddings.create.side_effect = openai.APIConnectionError(
            request=httpx.Request("POST", "https://api.openai.com/v1/embeddings")
        )
        with pytest.raises(EmbeddingProviderError):
            service.embed_batch(["text"])

    def test_openai_count_mismatch(self):
        service = OpenAIEmbeddingService(api_key="test-key")
        service.client = Mock()
        service.client.embeddings.create.return_value = Mock(data=[Mock(index=0, embedding=[1.0])])
        with pytest.raises(EmbeddingProviderError):
            service.embed_batch(["one", "two"])

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            create_embedding_provider(SimpleNamespace(embedding_provider="word2vec"))


class TestVectorStore:
    """Tests for InMemoryVectorStore."""

    def test_normalize_rows(self):
        rows = normalize_rows(np.array([[3.0, 4.0], [0.0, 0.0]], dtype=np.float32))
        assert np.allclose(rows[0], [0.6, 0.8])
        assert np.allclose(rows[1], [0.0, 0.0])

    def test_document_exists(self, vector_store):
        """Test document existence check."""
        assert not vector_store.document_exists("non-existent-doc")
        with pytest.raises(NotIndexed):
            vector_store.get("non-existent-doc")

    def test_get_many_lists_every_missing_id(self, vector_store, indexer, sample_chunks):
        indexer.index("test-doc-1", sample_chunks)
        with pytest.raises(NotIndexed) as exc_info:
            vector_store.get_many(["test-doc-1", "missing-a", "missing-b"])
        assert exc_info.value.missing_ids == ["missing-a", "missing-b"]

    def test_delete_document(self, vector_store, indexer, sample_chunks):
        indexer.index("test-doc-1", sample_chunks)
        vector_store.delete_document("test-doc-1")
        assert not vector_store.document_exists("test-doc-1")
        with pytest.raises(NotIndexed):
            vector_store.delete_document("test-doc-1")


class TestEmbeddingIndexer:
    """Tests for EmbeddingIndexer."""

    def test_index_document(self, vector_store, indexer, sample_chunks):
        entry = indexer.index("test-doc-1", sample_chunks)

        assert entry.chunk_count == 3
        assert entry.embeddings.shape == (3, 64)
        assert entry.dimension == 64
        assert entry.generation >= 1
        assert np.allclose(np.linalg.norm(entry.embeddings, axis=1), 1.0, atol=1e-5)
        assert not entry.embeddings.flags.writeable
        assert vector_store.get("test-doc-1") is entry
        assert vector_store.dimension == 64

    def test_batches_keep_chunk_order(self, indexer, embedding_provider, sample_chunks):
        entry = indexer.index("test-doc-1", sample_chunks)

        # batch_size=2 over three chunks
        assert len(embedding_provider.calls) == 2
        expected = normalize_rows(
            np.asarray(HashingEmbeddingProvider().embed_batch([c.text for c in sample_chunks]), dtype=np.float32)
        )
        assert np.allclose(entry.embeddings, expected)

    def test_reindex_replaces_whole_entry(self, vector_store, indexer, sample_chunks):
        first = indexer.index("test-doc-1", sample_chunks)
        second = indexer.index("test-doc-1", make_chunks("test-doc-1", ["Only one chunk now."]))

        assert second.generation > first.generation
        assert vector_store.get("test-doc-1").chunk_count == 1

    def test_failure_keeps_previous_entry(self, vector_store, indexer, sample_chunks):
        previous = indexer.index("test-doc-1", sample_chunks)

        failing = EmbeddingIndexer(vector_store, FailingEmbeddingProvider(succeed_calls=1), batch_size=2)
        with pytest.raises(EmbeddingProviderError):
            failing.index("test-doc-1", make_chunks("test-doc-1", ["a", "b", "c", "d"]))

        current = vector_store.get("test-doc-1")
        assert current is previous
        assert [c.text for c in current.chunks] == [c.text for c in sample_chunks]

    def test_timeout_keeps_previous_entry(self, vector_store, indexer, sample_chunks):
        """A provider call running past the time limit fails the index and keeps the old entry."""
        previous = indexer.index("test-doc-1", sample_chunks)

        slow = EmbeddingIndexer(vector_store, SlowEmbeddingProvider(delay=0.5), timeout_seconds=0.05)
        with pytest.raises(EmbeddingProviderError, match="timed out"):
            slow.index("test-doc-1", make_chunks("test-doc-1", ["Replacement text."]))

        assert vector_store.get("test-doc-1") is previous

    def test_documents_do_not_share_embedding_workers(self, vector_store):
        """A small document is not held up by a large one being indexed at the same time."""
        provider = SlowEmbeddingProvider(delay=0.2)
        indexer = EmbeddingIndexer(vector_store, provider, batch_size=1, max_workers=1, timeout_seconds=0.6)
        big_chunks = make_chunks("big", [f"large report section {i}" for i in range(8)])
        errors = []

        def index_big():
            try:
                indexer.index("big", big_chunks)
            except Exception as e:
                errors.append(e)

        worker = threading.Thread(target=index_big)
        worker.start()
        assert provider.started.wait(5)
        try:
            small = indexer.index("small", make_chunks("small", ["Short memo."]))
        finally:
            worker.join()

        assert small.chunk_count == 1
        assert errors == []
        assert vector_store.get("big").chunk_count == 8

    def test_failure_on_new_document_leaves_no_entry(self, vector_store, sample_chunks):
        failing = EmbeddingIndexer(vector_store, FailingEmbeddingProvider())
        with pytest.raises(EmbeddingProviderError):
            failing.index("test-doc-1", sample_chunks)
        assert not vector_store.document_exists("test-doc-1")

    def test_rejects_invalid_chunks(self, indexer, sample_chunks):
        with pytest.raises(ValueError):
            indexer.index("test-doc-1", [])
        with pytest.raises(ValueError):
            indexer.index("other-doc", sample_chunks)
        with pytest.raises(ValueError):
            indexer.index("test-doc-1", list(reversed(sample_chunks)))

    def test_model_mismatch(self, vector_store, sample_chunks):
        other = EmbeddingIndexer(vector_store, HashingEmbeddingProvider(model_id="other-model"))
        with pytest.raises(EmbeddingModelMismatchError):
            other.index("test-doc-1", sample_chunks)
        assert not vector_store.document_exists("test-doc-1")

    def test_dimension_mismatch(self, vector_store, indexer, sample_chunks):
        indexer.index("test-doc-1", sample_chunks)
        narrow = EmbeddingIndexer(vector_store, HashingEmbeddingProvider(dimension=32))
        with pytest.raises(EmbeddingModelMismatchError):
            narrow.index("test-doc-2", make_chunks("test-doc-2", ["Different width."]))

    def test_concurrent_index_is_rejected(self, vector_store, indexer, sample_chunks):
        acquired = threading.Event()
        release = threading.Event()

        def hold_lock():
            with vector_store.document_lock("test-doc-1"):
                acquired.set()
                release.wait(5)

        holder = threading.Thread(target=hold_lock)
        holder.start()
        assert acquired.wait(5)
        try:
            with pytest.raises(ConcurrentIndexInProgress):
                indexer.index("test-doc-1", sample_chunks)
            # other documents are unaffected
            indexer.index("test-doc-2", make_chunks("test-doc-2", ["Independent document."]))
        finally:
            release.set()
            holder.join()

        assert not vector_store.document_exists("test-doc-1")
        assert vector_store.document_exists("test-doc-2")

    def test_racing_reindex_has_one_winner(self, vector_store, indexer, embedding_provider):
        """Two re-index calls race on one id; readers only ever see a whole chunk set."""
        old_texts = ["Old revenue summary.", "Old dividend note."]
        candidates = {
            "first": ["First revenue summary.", "First dividend note.", "First outlook."],
            "second": ["Second revenue summary."],
        }
        indexer.index("shared", make_chunks("shared", old_texts))

        gate = GatedEmbeddingProvider()
        racing = EmbeddingIndexer(vector_store, gate)
        retriever = Retriever(vector_store, embedding_provider)
        start = threading.Barrier(len(candidates))
        finished = threading.Event()
        stop_reading = threading.Event()
        outcomes = {}
        seen, mixed = [], []

        def reindex(name):
            start.wait(5)
            try:
                outcomes[name] = racing.index("shared", make_chunks("shared", candidates[name]))
            except Exception as e:
                outcomes[name] = e
            finally:
                finished.set()

        def read():
            whole_sets = [set(old_texts)] + [set(texts) for texts in candidates.values()]
            while not stop_reading.is_set():
                try:
                    results = retriever.retrieve("shared", "revenue dividend", top_k=10)
                except Exception as e:
                    mixed.append(e)
                    return
                texts = {r.chunk.text for r in results}
                seen.append(texts)
                if texts not in whole_sets:
                    mixed.append(texts)

        reader = threading.Thread(target=read)
        writers = [threading.Thread(target=reindex, args=(name,)) for name in candidates]
        reader.start()
        for writer in writers:
            writer.start()
        try:
            # the rejected call returns while the winner waits at the gate
            assert finished.wait(5)
            time.sleep(0.05)
        finally:
            gate.release.set()
            for writer in writers:
                writer.join()
            time.sleep(0.05)
            stop_reading.set()
            reader.join()

        winners = [name for name, outcome in outcomes.items() if not isinstance(outcome, Exception)]
        rejected = [name for name, outcome in outcomes.items() if isinstance(outcome, ConcurrentIndexInProgress)]
        assert len(winners) == 1
        assert len(rejected) == 1

        stored = vector_store.get("shared")
        assert stored is outcomes[winners[0]]
        assert [c.text for c in stored.chunks] == candidates[winners[0]]
        assert mixed == []
        assert set(old_texts) in seen

    def test_lock_is_reentrant_for_owner(self, vector_store, indexer, sample_chunks):
        with vector_store.document_lock("test-doc-1"):
            entry = indexer.index("test-doc-1", sample_chunks)
        assert entry.chunk_count == 3


class TestIngestionService:
    """Tests for the ingestion pipeline."""

    def test_ingest_and_skip_unchanged(self, ingestion_service, vector_store, sample_pdf_content):
        first = ingestion_service.ingest("report", sample_pdf_content)
        assert first.status == JobStatus.INDEXED
        assert first.page_count == 3
        assert first.chunk_count == vector_store.get("report").chunk_count

        second = ingestion_service.ingest("report", sample_pdf_content)
        assert second.status == JobStatus.UNCHANGED
        assert second.generation == first.generation

        forced = ingestion_service.ingest("report", sample_pdf_content, force=True)
        assert forced.status == JobStatus.INDEXED
        assert forced.generation > first.generation

    def test_changed_content_is_reindexed(self, ingestion_service, vector_store, sample_pdf_content):
        first = ingestion_service.ingest("report", sample_pdf_content)
        second = ingestion_service.ingest("report", make_pdf(["A completely different single page."]))

        assert second.status == JobStatus.INDEXED
        assert second.generation > first.generation
        assert vector_store.get("report").page_count == 1

    def test_failed_ingest_keeps_previous_entry(self, ingestion_service, vector_store, sample_pdf_content):
        ingestion_service.ingest("report", sample_pdf_content)
        before = vector_store.get("report")

        with pytest.raises(ExtractionError):
            ingestion_service.ingest("report", make_pdf([None]))
        assert vector_store.get("report") is before

    def test_run_job_records_failure(self, ingestion_service):
        ingestion_service.submit("broken")
        job = ingestion_service.run_job("broken", b"not a pdf at all")

        assert job.status == JobStatus.FAILED
        assert job.error_type == "ExtractionError"
        assert job.finished_at is not None
        assert ingestion_service.get_job("broken") is job

    def test_run_job_records_success(self, ingestion_service, sample_pdf_content):
        ingestion_service.submit("report")
        job = ingestion_service.run_job("report", sample_pdf_content)

        assert job.status == JobStatus.INDEXED
        assert job.page_count == 3
        assert job.chunk_count > 0
        assert ingestion_service.jobs_in_flight() == 0

    def test_duplicate_submit_is_rejected(self, ingestion_service, sample_pdf_content):
        ingestion_service.submit("report")
        assert ingestion_service.jobs_in_flight() == 1
        with pytest.raises(ConcurrentIndexInProgress):
            ingestion_service.submit("report")

        ingestion_service.run_job("report", sample_pdf_content)
        assert ingestion_service.submit("report").status == JobStatus.QUEUED

    def test_delete_document(self, ingestion_service, vector_store, sample_pdf_content):
        ingestion_service.ingest("report", sample_pdf_content)
        ingestion_service.delete_document("report")

        assert not vector_store.document_exists("report")
        with pytest.raises(NotIndexed):
            ingestion_service.delete_document("report")

    def test_delete_during_job_is_rejected(self, ingestion_service):
        ingestion_service.submit("report")
        with pytest.raises(ConcurrentIndexInProgress):
            ingestion_service.delete_document("report")

    def test_submit_during_delete_keeps_its_job(self, ingestion_service, vector_store, sample_pdf_content):
        """A job submitted while a delete is running is queued after it, not dropped."""
        ingestion_service.ingest("report", sample_pdf_content)
        store_delete = vector_store.delete_document
        submitters, submitted, blocked = [], [], []

        def delete_with_concurrent_submit(document_id):
            submitter = threading.Thread(target=lambda: submitted.append(ingestion_service.submit(document_id)))
            submitters.append(submitter)
            submitter.start()
            submitter.join(0.1)
            blocked.append(submitter.is_alive())
            store_delete(document_id)

        with patch.object(vector_store, "delete_document", side_effect=delete_with_concurrent_submit):
            ingestion_service.delete_document("report")
        submitters[0].join(5)

        assert blocked == [True]
        assert not vector_store.document_exists("report")
        job = ingestion_service.get_job("report")
        assert job is submitted[0]
        assert job.status == JobStatus.QUEUED


def test_chunk_is_immutable():
    chunk = Chunk(text="t", page_number=1, chunk_index=0, document_id="d")
    with pytest.raises(AttributeError):
        chunk.text = "changed"


def test_tracing_disabled():
    assert initialize_tracing(tracing_enabled=False) is None
    shutdown_tracing(None)


def test_span_exporter_selection():
    assert isinstance(_build_exporter(None), ConsoleSpanExporter)
    assert isinstance(_build_exporter("http://localhost:4318/v1/traces"), OTLPSpanExporter)
