"""FastAPI application entry point."""
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from pydantic_settings import BaseSettings, SettingsConfigDict
from starlette.responses import Response

from pdf_rag.api.routes import documents, metrics, retrieve
from pdf_rag.services.document_processor import DocumentProcessor
from pdf_rag.services.embedding_service import EmbeddingProvider, create_embedding_provider
from pdf_rag.services.indexer import EmbeddingIndexer
from pdf_rag.services.ingestion_service import IngestionService
from pdf_rag.services.retrieval_service import Retriever
from pdf_rag.services.stats_service import StatsService
from pdf_rag.services.vector_store import InMemoryVectorStore
from pdf_rag.utils.logger import logger
from pdf_rag.utils.tracer import initialize_tracing, shutdown_tracing


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        # Look for .env in both backend/ and the repository root
        env_file=(
            os.path.join(os.path.dirname(__file__), "..", "..", ".env"),
            os.path.join(os.path.dirname(__file__), "..", ".env"),
        ),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    # Embedding provider: "sentence-transformers" (local) or "openai"
    embedding_provider: str = "sentence-transformers"
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    openai_api_key: str = ""
    openai_base_url: str = ""  # Empty = api.openai.com
    cpu_cores: int = 0  # Number of CPU cores to use (0 = use all available)

    # Document chunking configuration
    chunk_size: int = 500
    chunk_overlap: int = 100

    # Retrieval
    top_k_chunks: int = 5
    search_cache_size: int = 50  # Cached result lists (0 = disabled)

    # Embedding execution
    embedding_batch_size: int = 64
    embedding_workers: int = 4  # Concurrent provider calls per document
    embedding_timeout_seconds: float = 60.0  # Per-batch timeout

    # Document upload limits
    max_file_size_mb: int = 50
    max_pages: int = 1000

    # OpenTelemetry tracing configuration
    tracing_enabled: bool = True
    otlp_endpoint: str = ""  # OTLP endpoint URL (empty = use console exporter)


# Global services (initialized in lifespan)
settings: Settings = None
vector_store: InMemoryVectorStore = None
embedding_provider: EmbeddingProvider = None
indexer: EmbeddingIndexer = None
retriever: Retriever = None
ingestion_service: IngestionService = None
stats_service: StatsService = None
tracer_provider = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown."""
    global settings, vector_store, embedding_provider, indexer, retriever
    global ingestion_service, stats_service, tracer_provider

    # Startup
    logger.info("Starting PDF RAG service")
    settings = Settings()

    # Initialize tracing before services
    tracer_provider = initialize_tracing(
        service_name="pdf-rag",
        service_version="0.1.0",
        otlp_endpoint=settings.otlp_endpoint if settings.otlp_endpoint else None,
        tracing_enabled=settings.tracing_enabled,
        instrument_openai=settings.embedding_provider == "openai",
    )

    # Embedding model is loaded lazily on first use
    embedding_provider = create_embedding_provider(settings)
    vector_store = InMemoryVectorStore(model_id=embedding_provider.model_id)

    document_processor = DocumentProcessor(
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
        max_pages=settings.max_pages,
    )
    indexer = EmbeddingIndexer(
        store=vector_store,
        embedding_provider=embedding_provider,
        batch_size=settings.embedding_batch_size,
        max_workers=settings.embedding_workers,
        timeout_seconds=settings.embedding_timeout_seconds,
    )
    retriever = Retriever(
        store=vector_store,
        embedding_provider=embedding_provider,
        default_top_k=settings.top_k_chunks,
        cache_size=settings.search_cache_size,
    )
    ingestion_service = IngestionService(
        document_processor=document_processor,
        indexer=indexer,
        vector_store=vector_store,
    )
    stats_service = StatsService(
        store=vector_store,
        retriever=retriever,
        ingestion_service=ingestion_service,
    )

    logger.info(
        f"All services initialized (chunk_size={settings.chunk_size}, "
        f"chunk_overlap={settings.chunk_overlap}, top_k={settings.top_k_chunks})",
        extra={"model_id": embedding_provider.model_id},
    )

    yield

    # Shutdown
    logger.info("Shutting down PDF RAG service")
    if hasattr(embedding_provider, "close"):
        embedding_provider.close()
    if tracer_provider:
        shutdown_tracing(tracer_provider)


# Create FastAPI app
app = FastAPI(
    title="PDF RAG",
    description="PDF ingestion, embedding index and top-K chunk retrieval",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify allowed origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "PDF RAG",
        "indexed_documents": len(vector_store.snapshot()) if vector_store else 0,
    }


# Prometheus metrics endpoint
@app.get("/metrics")
async def prometheus_metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Include routers
app.include_router(documents.router, prefix="/api", tags=["documents"])
app.include_router(retrieve.router, prefix="/api", tags=["retrieve"])
app.include_router(metrics.router, prefix="/api", tags=["stats"])


if __name__ == "__main__":
    import uvicorn

    server_settings = Settings()
    uvicorn.run(app, host=server_settings.api_host, port=server_settings.api_port)
