"""OpenTelemetry setup for the ``rag.ingest``, ``rag.embed`` and ``rag.retrieve`` spans."""
from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.openai import OpenAIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter

from pdf_rag.utils.logger import logger


def _build_exporter(otlp_endpoint: Optional[str]) -> SpanExporter:
    if otlp_endpoint:
        logger.info(f"Exporting pipeline spans to {otlp_endpoint}")
        return OTLPSpanExporter(endpoint=otlp_endpoint)
    logger.info("Exporting pipeline spans to stdout")
    return ConsoleSpanExporter()


def initialize_tracing(
    service_name: str = "pdf-rag",
    service_version: str = "0.1.0",
    otlp_endpoint: Optional[str] = None,
    tracing_enabled: bool = True,
    instrument_openai: bool = False,
) -> Optional[TracerProvider]:
    """
    Route the pipeline spans to an exporter.

    The ingestor, indexer and retriever fetch their tracers at import time through
    ``trace.get_tracer``. They stay no-ops unless this installs a provider, so a
    disabled or broken exporter never blocks ingestion or retrieval.

    Args:
        service_name: ``service.name`` resource attribute on every span
        service_version: ``service.version`` resource attribute
        otlp_endpoint: Collector URL for OTLP over HTTP; spans go to stdout when unset
        tracing_enabled: Skip setup entirely when False
        instrument_openai: Add client spans around OpenAI embedding requests

    Returns:
        The installed provider, or None when tracing is off or setup failed
    """
    if not tracing_enabled:
        logger.info("Pipeline tracing disabled")
        return None

    try:
        provider = TracerProvider(
            resource=Resource.create({"service.name": service_name, "service.version": service_version})
        )
        provider.add_span_processor(BatchSpanProcessor(_build_exporter(otlp_endpoint)))
        trace.set_tracer_provider(provider)

        if instrument_openai:
            OpenAIInstrumentor().instrument()
    except Exception as e:
        logger.error(f"Pipeline tracing unavailable: {str(e)}", exc_info=True)
        return None

    return provider


def shutdown_tracing(tracer_provider: Optional[TracerProvider]) -> None:
    """Export any spans still buffered from the last requests."""
    if tracer_provider is None:
        return
    try:
        tracer_provider.shutdown()
        logger.info("Pipeline tracing stopped")
    except Exception as e:
        logger.warning(f"Tracer provider shutdown failed: {str(e)}")
