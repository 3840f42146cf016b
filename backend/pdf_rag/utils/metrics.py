"""Prometheus metrics for ingestion, embedding and retrieval."""
from prometheus_client import Counter, Gauge, Histogram

INGESTIONS = Counter(
    "pdf_rag_ingestions_total",
    "Document ingestions by outcome",
    ["status"],
)

EMBEDDING_BATCH_SECONDS = Histogram(
    "pdf_rag_embedding_batch_seconds",
    "Latency of one embedding provider batch call",
)

RETRIEVALS = Counter(
    "pdf_rag_retrievals_total",
    "Retrieval requests by outcome",
    ["outcome"],
)

RETRIEVAL_SECONDS = Histogram(
    "pdf_rag_retrieval_seconds",
    "End-to-end retrieval latency including query embedding",
)

INDEXED_DOCUMENTS = Gauge("pdf_rag_indexed_documents", "Documents currently indexed")
INDEXED_CHUNKS = Gauge("pdf_rag_indexed_chunks", "Chunks currently indexed")


def update_index_gauges(entries) -> None:
    """Refresh the index size gauges from a store snapshot."""
    INDEXED_DOCUMENTS.set(len(entries))
    INDEXED_CHUNKS.set(sum(entry.chunk_count for entry in entries.values()))
