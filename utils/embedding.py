"""
Embedding utilities - Generate vector embeddings for messages and queries
Supports both API (OpenAI) and local (SentenceTransformers) providers
Embeddings are cached by content hash in the shared cache service
"""
from typing import List, Optional, Tuple
import asyncio
import hashlib
import logging

import numpy as np
import openai
from openai import AsyncOpenAI
from pydantic import BaseModel

from core.errors import ProviderRateLimitError, TransientError
from services.cache import CacheService, CacheTier
import config


logger = logging.getLogger(__name__)

EMBEDDING_NAMESPACE = "embeddings"


class EmbeddingResult(BaseModel):
    vector: List[float]
    model: str
    tokens: int = 0
    cached: bool = False


def estimate_tokens(text: str) -> int:
    """Rough token count (~4 characters per token)."""
    return max(1, len(text) // getattr(config, 'CHARS_PER_TOKEN', 4))


def truncate_text(text: str, max_tokens: int = None) -> str:
    """Cut text to the provider's input limit."""
    max_tokens = max_tokens or config.EMBEDDING_MAX_INPUT_TOKENS
    max_chars = max_tokens * getattr(config, 'CHARS_PER_TOKEN', 4)
    return text if len(text) <= max_chars else text[:max_chars]


def content_hash(text: str, model: str) -> str:
    """Cache identity of an embedding: the model plus the exact input."""
    return hashlib.sha256(f"{model}:{text}".encode("utf-8")).hexdigest()


def parse_retry_after(value: Optional[str], default: float = None) -> float:
    default = config.EMBEDDING_DEFAULT_RETRY_AFTER if default is None else default
    if value is None:
        return default
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return default


class OpenAIEmbeddingProvider:
    """
    Embedding provider using the OpenAI embeddings API.
    Rate limits surface as ProviderRateLimitError carrying the server's Retry-After.
    """

    def __init__(
        self,
        api_key: str = None,
        base_url: str = None,
        model: str = None,
        dimension: int = None,
        client: Optional[AsyncOpenAI] = None
    ):
        self.model = model or config.EMBEDDING_MODEL
        self.dimension = dimension or config.EMBEDDING_DIMENSION
        self.client = client or AsyncOpenAI(
            api_key=api_key or config.OPENAI_API_KEY,
            base_url=base_url or getattr(config, 'OPENAI_BASE_URL', None)
        )
        logger.info("[Embedding] OpenAI provider initialized: %s (%dD)", self.model, self.dimension)

    async def embed_batch(self, texts: List[str]) -> Tuple[List[List[float]], int]:
        """Embed texts in one request. Returns (vectors in input order, tokens used)."""
        kwargs = {"model": self.model, "input": texts}
        if self.model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self.dimension

        try:
            response = await self.client.embeddings.create(**kwargs)
        except openai.RateLimitError as e:
            headers = getattr(getattr(e, "response", None), "headers", None) or {}
            retry_after = parse_retry_after(headers.get("retry-after"))
            raise ProviderRateLimitError(f"Embedding rate limited: {e}", retry_after=retry_after) from e
        except (openai.APIConnectionError, openai.APITimeoutError) as e:
            raise TransientError(f"Embedding provider unreachable: {e}") from e

        data = sorted(response.data, key=lambda item: item.index)
        tokens = getattr(response.usage, "total_tokens", 0) if response.usage else 0
        return [list(item.embedding) for item in data], tokens

    async def embed(self, text: str) -> EmbeddingResult:
        vectors, tokens = await self.embed_batch([text])
        return EmbeddingResult(vector=vectors[0], model=self.model, tokens=tokens)


class LocalEmbeddingProvider:
    """
    Embedding provider using local SentenceTransformers.
    Free but has cold start penalty; the model loads on first use.
    """

    def __init__(self, model_name: str = None):
        self.model = model_name or "sentence-transformers/all-MiniLM-L6-v2"
        self._model = None
        self.dimension = None

    def _load(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info("[Embedding] Loading local embedding model: %s", self.model)
            self._model = SentenceTransformer(self.model)
            self.dimension = self._model.get_sentence_embedding_dimension()
        return self._model

    def _encode(self, texts: List[str]) -> np.ndarray:
        model = self._load()
        return np.asarray(
            model.encode(texts, show_progress_bar=False, normalize_embeddings=True),
            dtype=np.float32
        )

    async def embed_batch(self, texts: List[str]) -> Tuple[List[List[float]], int]:
        vectors = await asyncio.to_thread(self._encode, texts)
        return vectors.tolist(), sum(estimate_tokens(t) for t in texts)

    async def embed(self, text: str) -> EmbeddingResult:
        vectors, tokens = await self.embed_batch([text])
        return EmbeddingResult(vector=vectors[0], model=self.model, tokens=tokens)


class EmbeddingModel:
    """
    Unified embedding model with caching support.

    Config options:
        EMBEDDING_PROVIDER = "openai" | "local"
        EMBEDDING_MODEL = model name
        EMBEDDING_DIMENSION = vector size stored in LanceDB
    """

    def __init__(
        self,
        provider=None,
        cache: Optional[CacheService] = None,
        provider_type: str = None,
        model_name: str = None
    ):
        if provider is None:
            provider_type = provider_type or getattr(config, 'EMBEDDING_PROVIDER', 'openai')
            if provider_type == "local":
                provider = LocalEmbeddingProvider(model_name=model_name)
            else:
                provider = OpenAIEmbeddingProvider(model=model_name)

        self.provider = provider
        self.cache = cache
        self.cache_ttl = getattr(config, 'EMBEDDING_CACHE_TTL', 30 * 24 * 3600)

    @property
    def model_name(self) -> str:
        return self.provider.model

    @property
    def dimension(self) -> int:
        return self.provider.dimension or config.EMBEDDING_DIMENSION

    async def embed(self, text: str) -> EmbeddingResult:
        """
        Embed one text, checking the cache first.

        Args:
            text: Input text; truncated to the provider's input limit
        """
        text = truncate_text(text)
        key = content_hash(text, self.model_name)

        if self.cache is not None:
            cached = await self.cache.get(EMBEDDING_NAMESPACE, key)
            if cached is not None:
                return EmbeddingResult(vector=cached, model=self.model_name, cached=True)

        result = await self.provider.embed(text)

        if self.cache is not None:
            await self.cache.set(EMBEDDING_NAMESPACE, key, result.vector, ttl=self.cache_ttl, tier=CacheTier.COLD)
        return result

    async def embed_query(self, text: str) -> List[float]:
        """Vector for a search query."""
        return (await self.embed(text)).vector
