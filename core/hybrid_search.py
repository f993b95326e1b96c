"""
Hybrid search over channel messages.

Three retrieval paths run concurrently:
- keyword:  full-text search, scores normalised to [0, 1]
- semantic: cosine similarity between the query embedding and stored embeddings
- recency:  the channel's recent messages (only boosts, never adds candidates)

Fusion (keyed by channel_id + message_ts):
    score = kw * (1 - w) + sem * w
    score *= 1 + exp(-decay * age_hours / 24) * 0.2
    score *= 1.1                      if the message is also recent
then filter by min_score, sort descending and cut to the limit.

Every path must settle before fusion; if any path failed the whole search
fails with HybridSearchError listing each failure.
"""
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple
import asyncio
import logging
import math

from core.errors import HybridSearchError
from models.context import SearchOptions
from models.message import Message, ScoredMessage
import config


logger = logging.getLogger(__name__)


def text_similarity(a: str, b: str) -> float:
    """Jaccard similarity of lowercase whitespace tokens."""
    tokens_a = set(a.lower().split())
    tokens_b = set(b.lower().split())
    if not tokens_a and not tokens_b:
        return 1.0
    union = tokens_a | tokens_b
    return len(tokens_a & tokens_b) / len(union)


def temporal_score(created_at: datetime, now: datetime, decay: float) -> float:
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    age_hours = max(0.0, (now - created_at).total_seconds() / 3600)
    return math.exp(-decay * age_hours / 24)


def fuse_results(
    keyword_results: Sequence[Tuple[Message, float]],
    semantic_results: Sequence[Tuple[Message, float]],
    recent_messages: Sequence[Message],
    options: SearchOptions,
    now: datetime
) -> List[ScoredMessage]:
    """
    Combine the three retrieval paths into one ranked list.

    Pure function: the same inputs and `now` always give the same output.
    Ties are broken by newest message first, then by identity.
    """
    w = options.semantic_weight
    temporal_factor = getattr(config, 'HYBRID_TEMPORAL_FACTOR', 0.2)
    recency_boost = getattr(config, 'HYBRID_RECENCY_BOOST', 1.1)

    fused: Dict[Tuple[str, str], ScoredMessage] = {}

    for message, score in keyword_results:
        if message.key in fused:
            continue
        fused[message.key] = ScoredMessage(
            message=message,
            keyword_score=score,
            score=score * (1 - w)
        )

    for message, score in semantic_results:
        entry = fused.get(message.key)
        if entry is not None:
            if entry.semantic_score == 0.0:
                entry.semantic_score = score
                entry.score += score * w
        else:
            fused[message.key] = ScoredMessage(
                message=message,
                semantic_score=score,
                score=score * w
            )

    recent_keys = {m.key for m in recent_messages}

    for entry in fused.values():
        entry.temporal_score = temporal_score(entry.message.created_at, now, options.temporal_decay)
        entry.score *= 1 + entry.temporal_score * temporal_factor
        boosted = entry.key in recent_keys
        if boosted:
            entry.score *= recency_boost
        entry.explanation = (
            f"keyword={entry.keyword_score:.3f} semantic={entry.semantic_score:.3f} "
            f"temporal={entry.temporal_score:.3f}" + (" recent" if boosted else "")
        )

    ranked = [entry for entry in fused.values() if entry.score >= options.min_score]
    ranked.sort(key=lambda e: (-e.score, -e.message.ts_value, e.message.channel_id, e.message.message_ts))
    return ranked[:options.limit]


class HybridSearchEngine:
    """Keyword + semantic + recency retrieval over the message store."""

    def __init__(self, store, embedding_model, clock: Callable[[], datetime] = None):
        self.store = store
        self.embedding_model = embedding_model
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def _keyword(self, query: str, options: SearchOptions) -> List[Tuple[Message, float]]:
        return await self.store.keyword_search(query, options.channel_id, options.limit * 2)

    async def _semantic(self, query: str, options: SearchOptions) -> List[Tuple[Message, float]]:
        vector = await self.embedding_model.embed_query(query)
        return await self.store.find_similar(
            vector,
            limit=options.limit * 2,
            threshold=getattr(config, 'HYBRID_SEMANTIC_FLOOR', 0.5),
            channel_id=options.channel_id
        )

    async def _recency(self, options: SearchOptions) -> List[Message]:
        if not options.channel_id:
            return []
        return await self.store.get_recent_messages(
            options.channel_id, hours=options.recent_hours, limit=options.limit
        )

    async def search(self, query: str, options: Optional[SearchOptions] = None) -> List[ScoredMessage]:
        """
        Run keyword, semantic and recency retrieval concurrently and fuse them.

        Raises:
            HybridSearchError: one or more paths failed
        """
        options = options or SearchOptions()
        if not query or not query.strip():
            return []

        paths = {
            "keyword": self._keyword(query, options),
            "semantic": self._semantic(query, options),
            "recency": self._recency(options),
        }
        outcomes = await asyncio.gather(*paths.values(), return_exceptions=True)

        failures = {
            name: outcome for name, outcome in zip(paths, outcomes)
            if isinstance(outcome, BaseException)
        }
        if failures:
            logger.error("[HybridSearch] %d path(s) failed: %s", len(failures), list(failures))
            raise HybridSearchError(failures)

        keyword_results, semantic_results, recent_messages = outcomes
        results = fuse_results(keyword_results, semantic_results, recent_messages, options, self._clock())
        logger.debug(
            "[HybridSearch] keyword=%d semantic=%d recent=%d -> %d results",
            len(keyword_results), len(semantic_results), len(recent_messages), len(results)
        )
        return results

    def rerank(
        self,
        messages: List[ScoredMessage],
        query: str,
        diversity_weight: float = None,
        user_preferences: Optional[Dict[str, float]] = None
    ) -> List[ScoredMessage]:
        """
        Penalise near-duplicates of higher-ranked results and apply per-author boosts.

        Each earlier result with token Jaccard similarity above the duplicate
        threshold multiplies the score by (1 - (1 - diversity_weight) * similarity).
        Returns new objects; the input list is left untouched.
        """
        if diversity_weight is None:
            diversity_weight = getattr(config, 'HYBRID_DIVERSITY_WEIGHT', 0.2)
        threshold = getattr(config, 'HYBRID_DUPLICATE_THRESHOLD', 0.8)
        preferences = user_preferences or {}

        reranked = []
        for i, item in enumerate(messages):
            score = item.score
            for earlier in messages[:i]:
                similarity = text_similarity(item.message.message_text, earlier.message.message_text)
                if similarity > threshold:
                    score *= 1 - (1 - diversity_weight) * similarity
            score *= preferences.get(item.message.user_id, 1.0)
            reranked.append(item.model_copy(update={"score": score}))

        reranked.sort(key=lambda e: e.score, reverse=True)
        return reranked


class ThreadRetriever:
    """Thread messages plus related conversations found by hybrid search."""

    def __init__(self, store, search_engine: HybridSearchEngine):
        self.store = store
        self.search_engine = search_engine

    async def get_thread_context(
        self,
        channel_id: str,
        thread_ts: str,
        include_related: bool = True,
        max_messages: int = 100
    ) -> List[Message]:
        thread = await self.store.find_thread(channel_id, thread_ts, limit=max_messages)
        if not include_related or not thread:
            return thread

        root = next((m for m in thread if m.message_ts == thread_ts), None)
        if root is None:
            return thread

        related = await self.search_engine.search(
            root.message_text[:200],
            SearchOptions(channel_id=channel_id, limit=10, semantic_weight=0.8)
        )

        merged: Dict[Tuple[str, str], Message] = {m.key: m for m in thread}
        for item in related:
            merged.setdefault(item.key, item.message)
        return sorted(merged.values(), key=lambda m: m.ts_value)
