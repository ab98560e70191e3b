"""
Embedding Service for Regulation Search

Turns a semantic query into the fixed-length vector the store's similarity
function expects (256 dimensions with jina-embeddings-v3 in the reference
deployment). Query embeddings are cached in memory.

Architecture:
    BaseEmbeddingService  -- shared caching and embed_query
        JinaEmbeddingService    -- Jina AI HTTP API (default)
        VoyageEmbeddingService  -- Voyage AI SDK
"""

import os
import hashlib
import logging
import threading
from typing import Optional, Union
from dataclasses import dataclass

import requests

from .errors import EmbeddingProviderError

logger = logging.getLogger(__name__)

JINA_API_URL = "https://api.jina.ai/v1/embeddings"

# Matryoshka model: accepts output_dimension of 256, 512, 1024 or 2048
VOYAGE_MODEL = "voyage-3.5-lite"


@dataclass
class EmbeddingConfig:
    """Configuration for embedding service."""
    provider: str = "jina"  # "jina" or "voyage"
    model: str = "jina-embeddings-v3"
    dimensions: int = 256
    task: str = "retrieval.query"
    api_url: Optional[str] = None
    timeout_seconds: float = 30.0
    use_cache: bool = True
    max_cache_entries: int = 2048


class BaseEmbeddingService:
    """
    Base class for API-based embedding services.

    Subclasses implement:
    - _init_client(): set up the provider client (leave None if unconfigured)
    - _embed(text): return one embedding vector

    And set these class attributes:
    - _provider_name: Human-readable provider name for error messages
    - _env_var_name: Environment variable name for the API key
    """

    _provider_name: str = "Base"
    _env_var_name: str = ""

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        """
        Initialize embedding service.

        Args:
            config: Optional configuration. Uses defaults if not provided.
        """
        self.config = config or EmbeddingConfig()
        self._client = None
        self._cache: dict[str, list[float]] = {}
        self._cache_lock = threading.Lock()
        self._init_client()

    def _init_client(self):
        """Initialize the provider-specific API client. Must be overridden by subclasses."""
        raise NotImplementedError("Subclasses must implement _init_client()")

    def _embed(self, text: str) -> list[float]:
        raise NotImplementedError("Subclasses must implement _embed()")

    def embed_query(self, query: str) -> list[float]:
        """
        Generate embedding for a search query.

        Args:
            query: Search query string

        Returns:
            Embedding vector of ``config.dimensions`` floats

        Raises:
            EmbeddingProviderError: client missing, request failed, or the
                response did not contain a usable vector
        """
        if not self._client:
            raise EmbeddingProviderError(
                f"{self._provider_name} client not initialized. "
                f"Check {self._env_var_name}."
            )

        cache_key = self._get_cache_key(query)
        cached = self._get_cached(cache_key)
        if cached is not None:
            return cached

        embedding = self._embed(query)
        if not embedding:
            raise EmbeddingProviderError(
                f"{self._provider_name} returned an empty embedding"
            )
        if len(embedding) != self.config.dimensions:
            logger.warning(
                f"{self._provider_name} returned {len(embedding)} dimensions, "
                f"expected {self.config.dimensions}"
            )

        self._set_cached(cache_key, embedding)
        return embedding

    def _get_cache_key(self, text: str) -> str:
        """Generate cache key for text."""
        content = f"{self.config.model}:{self.config.task}:{text}"
        return hashlib.sha256(content.encode()).hexdigest()[:32]

    def _get_cached(self, key: str) -> Optional[list[float]]:
        if not self.config.use_cache:
            return None
        with self._cache_lock:
            return self._cache.get(key)

    def _set_cached(self, key: str, embedding: list[float]) -> None:
        if not self.config.use_cache:
            return
        with self._cache_lock:
            while self._cache and len(self._cache) >= self.config.max_cache_entries:
                # Drop the oldest entry (dicts keep insertion order)
                self._cache.pop(next(iter(self._cache)), None)
            self._cache[key] = embedding

    def clear_cache(self) -> None:
        with self._cache_lock:
            self._cache.clear()

    @property
    def dimensions(self) -> int:
        """Return embedding dimensions."""
        return self.config.dimensions


class JinaEmbeddingService(BaseEmbeddingService):
    """
    Embedding service using Jina AI's jina-embeddings-v3 over HTTP.

    jina-embeddings-v3 provides:
    - Matryoshka dimensions (256 used here to match the stored vectors)
    - Task-specific adapters ("retrieval.query" for search queries)
    - Multilingual coverage (EU regulations in English and Japanese UI)
    """

    _provider_name = "Jina AI"
    _env_var_name = "JINA_API_KEY"

    def _init_client(self):
        """Initialize an authenticated HTTP session."""
        api_key = os.getenv("JINA_API_KEY") or os.getenv("EMBEDDING_API_KEY")
        self._api_url = self.config.api_url or os.getenv("EMBEDDING_API_URL") or JINA_API_URL

        if not api_key:
            logger.warning(
                "JINA_API_KEY not found. Semantic search will fail. "
                "Set JINA_API_KEY or EMBEDDING_API_KEY."
            )
            return

        session = requests.Session()
        session.headers.update({
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        })
        self._client = session
        logger.info(f"Jina AI client initialized with model {self.config.model}")

    def _embed(self, text: str) -> list[float]:
        payload = {
            "model": self.config.model,
            "task": self.config.task,
            "dimensions": self.config.dimensions,
            "late_chunking": False,
            "embedding_type": "float",
            "input": [text],
        }
        try:
            response = self._client.post(
                self._api_url, json=payload, timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as e:
            logger.error(f"Jina AI request failed: {e}")
            raise EmbeddingProviderError(f"Jina AI request failed: {e}") from e

        if not response.ok:
            logger.error(f"Jina AI API error {response.status_code}: {response.text[:500]}")
            raise EmbeddingProviderError(
                f"Jina AI API error: {response.status_code} {response.reason}"
            )

        try:
            return response.json()["data"][0]["embedding"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise EmbeddingProviderError("Invalid response format from Jina AI API") from e


class VoyageEmbeddingService(BaseEmbeddingService):
    """Embedding service using Voyage AI (voyage-3.5-lite at 256 dimensions)."""

    _provider_name = "Voyage AI"
    _env_var_name = "VOYAGE_API_KEY"

    def _init_client(self):
        """Initialize the Voyage AI client."""
        api_key = os.getenv("VOYAGE_API_KEY")

        if not api_key:
            logger.warning(
                "VOYAGE_API_KEY not found. Embeddings will fail. "
                "Get your API key at https://dash.voyageai.com/"
            )
            return

        try:
            import voyageai
            self._client = voyageai.Client(api_key=api_key)
            logger.info(f"Voyage AI client initialized with model {self.config.model}")
        except ImportError:
            logger.error("voyageai package not installed. Run: pip install voyageai")
            raise

    def _embed(self, text: str) -> list[float]:
        try:
            response = self._client.embed(
                texts=[text],
                model=self.config.model,
                input_type="query",
                output_dimension=self.config.dimensions,
            )
        except Exception as e:
            logger.error(f"Voyage AI embedding failed: {e}")
            raise EmbeddingProviderError(f"Voyage AI embedding failed: {e}") from e
        return response.embeddings[0] if response.embeddings else []


def get_embedding_service(
    provider: Optional[str] = None,
) -> Union[JinaEmbeddingService, VoyageEmbeddingService]:
    """
    Factory function to get appropriate embedding service.

    Args:
        provider: "jina" (default) or "voyage". Falls back to EMBEDDING_PROVIDER.

    Returns:
        Configured embedding service
    """
    provider = provider or os.getenv("EMBEDDING_PROVIDER", "jina")

    if provider == "voyage":
        config = EmbeddingConfig(
            provider="voyage",
            model=VOYAGE_MODEL,
            dimensions=256,
            task="query",
        )
        return VoyageEmbeddingService(config)

    return JinaEmbeddingService(EmbeddingConfig())


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    service = get_embedding_service()
    query = " ".join(sys.argv[1:]) or "lawful basis for processing personal data"

    print(f"Query: {query}")
    embedding = service.embed_query(query)
    print(f"Embedding dimensions: {len(embedding)}")
    print(f"First 10 values: {embedding[:10]}")
