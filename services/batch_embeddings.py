"""
Batch embedding processor.

Embeds many texts at once for backfills and bulk imports:
1. hash every input and fetch cached vectors with one mget
2. split the misses into chunks bounded by item count and token budget
3. run chunks concurrently (bounded), waiting out provider rate limits
4. write new vectors back with one mset

EmbeddingBackfillJob uses it to attach embeddings to stored messages that
were ingested without one.
"""
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
import asyncio
import logging

import numpy as np
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
)

from core.errors import ProviderRateLimitError
from services.cache import CacheService, CacheTier
from utils.embedding import (
    EMBEDDING_NAMESPACE,
    EmbeddingModel,
    content_hash,
    estimate_tokens,
    truncate_text,
)
import config


logger = logging.getLogger(__name__)


class BatchInput(BaseModel):
    id: str
    text: str


class BatchResult(BaseModel):
    id: str
    vector: Optional[List[float]] = None
    cached: bool = False
    error: Optional[str] = None


class _Item:
    __slots__ = ("id", "text", "key", "tokens")

    def __init__(self, item_id: str, text: str, key: str):
        self.id = item_id
        self.text = text
        self.key = key
        self.tokens = estimate_tokens(text)


def _wait_retry_after(retry_state) -> float:
    """Wait exactly as long as the provider asked."""
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    retry_after = getattr(exc, "retry_after", None)
    return retry_after if retry_after is not None else config.EMBEDDING_DEFAULT_RETRY_AFTER


class BatchEmbeddingProcessor:
    """Cache-aware, chunked, rate-limit-tolerant bulk embedding."""

    def __init__(
        self,
        embedding_model: EmbeddingModel,
        cache: Optional[CacheService] = None,
        max_batch_size: int = None,
        max_batch_tokens: int = None,
        concurrency: int = None,
        max_retries: int = None,
        sleep: Callable[[float], Any] = asyncio.sleep
    ):
        self.embedding_model = embedding_model
        self.cache = cache if cache is not None else embedding_model.cache
        self.max_batch_size = max_batch_size or config.EMBEDDING_MAX_BATCH_SIZE
        self.max_batch_tokens = max_batch_tokens or config.EMBEDDING_MAX_BATCH_TOKENS
        self.concurrency = concurrency or config.EMBEDDING_CONCURRENCY
        self.max_retries = max_retries if max_retries is not None else config.EMBEDDING_MAX_RETRIES
        self._sleep = sleep

        self.stats = {
            "processed": 0,
            "cached": 0,
            "errors": 0,
            "total_tokens": 0,
            "rate_limited": 0,
        }

    # ------------------------------------------------------------------

    def _chunk(self, items: List[_Item]) -> List[List[_Item]]:
        chunks: List[List[_Item]] = []
        current: List[_Item] = []
        current_tokens = 0
        for item in items:
            too_many = len(current) >= self.max_batch_size
            too_large = current and current_tokens + item.tokens > self.max_batch_tokens
            if too_many or too_large:
                chunks.append(current)
                current, current_tokens = [], 0
            current.append(item)
            current_tokens += item.tokens
        if current:
            chunks.append(current)
        return chunks

    def _note_rate_limit(self, retry_state):
        self.stats["rate_limited"] += 1
        exc = retry_state.outcome.exception()
        logger.warning(
            "[BatchEmbeddings] Rate limited, retrying in %.1fs (attempt %d)",
            getattr(exc, "retry_after", 0.0) or 0.0, retry_state.attempt_number
        )

    async def _embed_chunk(self, chunk: List[_Item]) -> List[List[float]]:
        provider = self.embedding_model.provider
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=_wait_retry_after,
            retry=retry_if_exception_type(ProviderRateLimitError),
            before_sleep=self._note_rate_limit,
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                vectors, tokens = await provider.embed_batch([item.text for item in chunk])
        self.stats["total_tokens"] += tokens
        return vectors

    async def process_batch(self, inputs: Sequence[Union[BatchInput, Dict[str, str]]]) -> List[BatchResult]:
        """
        Embed a batch of inputs.

        Args:
            inputs: items with `id` and `text`

        Returns:
            One BatchResult per input, in input order. Items of a chunk that
            failed carry `error` instead of a vector.
        """
        model = self.embedding_model.model_name
        items = []
        for raw in inputs:
            entry = raw if isinstance(raw, BatchInput) else BatchInput(**raw)
            text = truncate_text(entry.text)
            items.append(_Item(entry.id, text, content_hash(text, model)))

        if not items:
            return []

        cached: Dict[str, Any] = {}
        if self.cache is not None:
            cached = await self.cache.mget(EMBEDDING_NAMESPACE, [item.key for item in items])

        results: Dict[str, BatchResult] = {}
        uncached: List[_Item] = []
        for item in items:
            if item.key in cached:
                results[item.id] = BatchResult(id=item.id, vector=cached[item.key], cached=True)
            else:
                uncached.append(item)
        self.stats["cached"] += len(items) - len(uncached)

        # Identical texts are embedded once
        unique: Dict[str, _Item] = {}
        for item in uncached:
            unique.setdefault(item.key, item)

        fresh: Dict[str, List[float]] = {}
        failed: Dict[str, str] = {}
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _run(chunk: List[_Item]):
            async with semaphore:
                try:
                    vectors = await self._embed_chunk(chunk)
                except Exception as e:
                    logger.error("[BatchEmbeddings] Chunk of %d failed: %r", len(chunk), e)
                    for item in chunk:
                        failed[item.key] = repr(e)
                    return
                for item, vector in zip(chunk, vectors):
                    fresh[item.key] = vector

        chunks = self._chunk(list(unique.values()))
        if chunks:
            await asyncio.gather(*(_run(chunk) for chunk in chunks))

        if fresh and self.cache is not None:
            await self.cache.mset(
                EMBEDDING_NAMESPACE, fresh,
                ttl=self.embedding_model.cache_ttl, tier=CacheTier.COLD
            )

        for item in uncached:
            if item.key in fresh:
                results[item.id] = BatchResult(id=item.id, vector=fresh[item.key])
            else:
                results[item.id] = BatchResult(id=item.id, error=failed.get(item.key, "not embedded"))

        self.stats["processed"] += len(items)
        self.stats["errors"] += sum(1 for item in uncached if item.key not in fresh)
        return [results[item.id] for item in items]

    def get_stats(self) -> Dict[str, Any]:
        processed = self.stats["processed"]
        return {
            **self.stats,
            "cache_hit_rate": (self.stats["cached"] / processed) if processed else 0.0,
        }


def deduplicate_by_semantic_similarity(
    ids: List[str],
    vectors: List[List[float]],
    threshold: float = 0.95
) -> List[str]:
    """
    Drop near-duplicate vectors, keeping the first of each group.

    Returns:
        ids of the kept items, in input order
    """
    if len(ids) <= 1:
        return list(ids)

    matrix = np.asarray(vectors, dtype=np.float32)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    normalized = matrix / np.where(norms > 0, norms, 1)
    similarity = normalized @ normalized.T

    removed = set()
    for i in range(len(ids)):
        if i in removed:
            continue
        for j in range(i + 1, len(ids)):
            if j not in removed and similarity[i, j] > threshold:
                removed.add(j)
    return [item_id for idx, item_id in enumerate(ids) if idx not in removed]


class EmbeddingBackfillJob:
    """Attach embeddings to stored messages that do not have one yet."""

    def __init__(self, store, processor: BatchEmbeddingProcessor):
        self.store = store
        self.processor = processor

    async def run_once(self, limit: int = 100) -> int:
        messages = await self.store.get_messages_without_embeddings(limit=limit)
        if not messages:
            return 0

        results = await self.processor.process_batch(
            [BatchInput(id=m.id, text=m.message_text) for m in messages]
        )
        model = self.processor.embedding_model.model_name
        attached = 0
        for result in results:
            if result.vector is not None and await self.store.update_embedding(result.id, result.vector, model):
                attached += 1

        logger.info("[Backfill] Attached %d/%d embeddings", attached, len(messages))
        return attached
