"""Embedding providers: Sentence Transformers (local) and OpenAI-compatible APIs."""
import os
import threading
from abc import ABC, abstractmethod
from typing import List, Optional

import httpx
import openai
import torch
from openai import OpenAI
from sentence_transformers import SentenceTransformer

from pdf_rag.exceptions import EmbeddingProviderError
from pdf_rag.utils.logger import logger


def configure_cpu_cores(cpu_cores: int = 0) -> int:
    """
    Configure the number of CPU cores for PyTorch.

    Args:
        cpu_cores: Number of CPU cores to use (0 = use all available)

    Returns:
        Actual number of cores configured
    """
    available_cores = os.cpu_count() or 1
    cores_to_use = cpu_cores if cpu_cores > 0 else available_cores

    torch.set_num_threads(cores_to_use)

    logger.info(f"CPU configuration: using {cores_to_use} cores (available: {available_cores})")
    return cores_to_use


def _find_local_model_path() -> Optional[str]:
    """Get local model path if available."""
    local_model_path = os.getenv("EMBEDDING_MODEL_PATH")
    if local_model_path:
        return local_model_path if os.path.isdir(local_model_path) else None

    possible_paths = [
        os.path.join(os.path.dirname(__file__), "..", "..", "models", "sentence-transformers_all-MiniLM-L6-v2"),
        os.path.join(os.getcwd(), "models", "sentence-transformers_all-MiniLM-L6-v2"),
    ]
    for path in possible_paths:
        abs_path = os.path.abspath(path)
        if os.path.isdir(abs_path):
            return abs_path
    return None


class EmbeddingProvider(ABC):
    """
    Interface every embedding backend implements.

    ``model_id`` pins the embedding space: vectors from providers with
    different ids must never be compared.
    """

    model_id: str

    @abstractmethod
    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed several texts, returning one vector per text in order."""

    def embed(self, text: str) -> List[float]:
        """Embed a single text."""
        return self.embed_batch([text])[0]


class SentenceTransformerEmbeddingService(EmbeddingProvider):
    """Service for generating text embeddings using Sentence Transformers."""

    def __init__(
        self,
        model_name: str = "sentence-transformers/all-MiniLM-L6-v2",
        cpu_cores: int = 0,
        batch_size: int = 64,
    ):
        """
        Initialize embedding service (model loaded lazily on first use).

        Args:
            model_name: Name of the sentence transformer model
            cpu_cores: Number of CPU cores to use (0 = use all available)
            batch_size: Batch size passed to the encoder
        """
        self.model_id = model_name
        self._model_name = model_name
        self._cpu_cores = cpu_cores
        self._batch_size = batch_size
        self._model: Optional[SentenceTransformer] = None
        self._lock = threading.Lock()
        logger.info(f"EmbeddingService initialized (model {model_name} will be loaded on first use)")

    def _load_model(self) -> SentenceTransformer:
        """Load the model (thread-safe lazy loading)."""
        # Double-check locking pattern for thread safety
        if self._model is None:
            with self._lock:
                if self._model is None:
                    configure_cpu_cores(self._cpu_cores)

                    local_model_path = _find_local_model_path()
                    if local_model_path:
                        logger.info(f"Loading embedding model from local path: {local_model_path}")
                        self._model = SentenceTransformer(local_model_path, device="cpu")
                    else:
                        logger.info(f"Local model not found, loading from HuggingFace: {self._model_name}")
                        self._model = SentenceTransformer(self._model_name, device="cpu")

                    logger.info("Embedding model loaded", extra={"model_id": self.model_id})
        return self._model

    @property
    def model(self) -> SentenceTransformer:
        """Get the loaded model (loads lazily on first access)."""
        return self._load_model()

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a list of texts.

        Args:
            texts: List of text strings to embed

        Returns:
            List of embedding vectors (each is a list of floats)

        Raises:
            EmbeddingProviderError: If the model cannot be loaded or encoding fails
        """
        if not texts:
            return []

        try:
            embeddings = self.model.encode(
                texts,
                batch_size=self._batch_size,
                show_progress_bar=False,
                convert_to_numpy=True,
                normalize_embeddings=False,
            )
            return embeddings.tolist()
        except Exception as e:
            logger.error(f"Error generating embeddings: {str(e)}", exc_info=True)
            raise EmbeddingProviderError(f"Embedding generation failed: {str(e)}") from e


class OpenAIEmbeddingService(EmbeddingProvider):
    """Service for generating embeddings through an OpenAI-compatible embeddings API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "text-embedding-3-small",
        base_url: Optional[str] = None,
        timeout_seconds: float = 60.0,
    ):
        """
        Initialize OpenAI embedding client.

        Args:
            api_key: API key (from OPENAI_API_KEY if not provided)
            model: Embedding model name
            base_url: Optional API base URL for compatible providers
            timeout_seconds: Per-request timeout
        """
        api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ValueError("OPENAI_API_KEY environment variable is required")

        self.model = model
        self.model_id = f"openai:{model}"
        self.client = OpenAI(
            api_key=api_key,
            base_url=base_url or None,
            http_client=httpx.Client(timeout=timeout_seconds),
            max_retries=0,
        )

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a list of texts with one API call.

        Raises:
            EmbeddingProviderError: On API errors, timeouts or malformed responses
        """
        if not texts:
            return []

        try:
            response = self.client.embeddings.create(model=self.model, input=texts)
        except (openai.OpenAIError, httpx.HTTPError) as e:
            logger.error(f"Embedding API call failed: {str(e)}", extra={"model_id": self.model_id})
            raise EmbeddingProviderError(f"Embedding API call failed: {str(e)}") from e

        data = sorted(response.data, key=lambda item: item.index)
        if len(data) != len(texts):
            raise EmbeddingProviderError(
                f"Embedding API returned {len(data)} vectors for {len(texts)} inputs"
            )
        return [list(item.embedding) for item in data]

    def close(self) -> None:
        self.client.close()


def create_embedding_provider(settings) -> EmbeddingProvider:
    """Build the embedding provider named in the settings."""
    if settings.embedding_provider == "openai":
        return OpenAIEmbeddingService(
            api_key=settings.openai_api_key or None,
            model=settings.embedding_model,
            base_url=settings.openai_base_url or None,
            timeout_seconds=settings.embedding_timeout_seconds,
        )
    if settings.embedding_provider == "sentence-transformers":
        return SentenceTransformerEmbeddingService(
            model_name=settings.embedding_model,
            cpu_cores=settings.cpu_cores,
            batch_size=settings.embedding_batch_size,
        )
    raise ValueError(f"Unknown embedding provider: {settings.embedding_provider}")
