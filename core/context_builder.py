"""
Context builder - assembles what the bot knows about a channel for one reply.

A ContextBundle holds:
- recent messages of the channel (chronological)
- messages relevant to the incoming query (by relevance, never repeating a
  recent message)
- the thread, recent summaries and the profiles of recent authors, when asked

Two strategies find relevant messages:
- semantic: embedding similarity only
- hybrid:   keyword + semantic + recency fusion, then diversity reranking

Context assembly never raises: any failure is logged and a minimal bundle is
returned so the bot can still answer.
"""
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple
import asyncio
import hashlib
import logging
import math
import re

from core.errors import Result
from core.hybrid_search import HybridSearchEngine
from models.context import (
    ContextBundle,
    ContextOptions,
    ContextWindow,
    ConversationPatterns,
    SearchMetadata,
    SearchOptions,
)
from models.message import Message, MessageFilter, ScoredMessage
from services.cache import CacheService, CacheTier
import config


logger = logging.getLogger(__name__)

CONTEXT_NAMESPACE = "context"

# Vectors are not needed to render a cached bundle
_CACHED_EXCLUDE = {
    "recent_messages": {"__all__": {"embedding"}},
    "relevant_messages": {"__all__": {"embedding"}},
    "thread_context": {"__all__": {"embedding"}},
}

_WORD_RE = re.compile(r"[a-zA-Z][a-zA-Z']{3,}")
_STOPWORDS = {
    "this", "that", "with", "have", "from", "they", "what", "when", "where", "will",
    "would", "there", "their", "about", "just", "like", "your", "been", "were", "then",
    "than", "them", "some", "into", "could", "should", "which", "does", "also", "here",
}


# ============================================================
# Context window and quality
# ============================================================

def estimate_tokens(text: str) -> int:
    """~4 characters per token plus 20% formatting overhead."""
    if not text:
        return 0
    return math.ceil(math.ceil(len(text) / 4) * 1.2)


class ContextQualityScorer:
    """
    Score how useful a bundle is, in [0, 1].

    Weighted average over the signals present:
        recency 0.3, relevance 0.4, author diversity 0.1,
        thread present 0.1, profiles present 0.1
    """

    def score(self, bundle: ContextBundle, relevance_scores: Optional[List[float]] = None) -> float:
        score = 0.0
        weights = 0.0

        if bundle.recent_messages:
            score += min(len(bundle.recent_messages) / 10, 1.0) * 0.3
            weights += 0.3

        if bundle.relevant_messages:
            scores = relevance_scores or []
            avg_relevance = (sum(scores) / len(scores)) if scores else 0.0
            score += min(avg_relevance, 1.0) * 0.4
            weights += 0.4

        if len(bundle.relevant_messages) > 1:
            unique_authors = len({m.user_id for m in bundle.relevant_messages})
            score += unique_authors / len(bundle.relevant_messages) * 0.1
            weights += 0.1

        if bundle.thread_context:
            score += 0.1
            weights += 0.1

        if bundle.user_profiles:
            score += 0.1
            weights += 0.1

        return score / weights if weights > 0 else 0.0


# ============================================================
# Formatting
# ============================================================

def format_memory_context(bundle: ContextBundle) -> str:
    """
    Flatten a bundle into prompt text.

    Section order: summaries, user profiles, thread, relevant past
    conversations, recent conversation. Empty sections are omitted and an
    empty bundle gives "".
    """
    profiles = bundle.user_profiles or {}

    def author(message: Message) -> str:
        profile = profiles.get(message.user_id)
        return profile.username if profile and profile.username else message.user_id

    sections: List[List[str]] = []

    if bundle.conversation_summaries:
        lines = ["=== Recent Conversation History ==="]
        for summary in bundle.conversation_summaries[:3]:
            lines.append(f"[{summary.created_at.strftime('%Y-%m-%d')}] {summary.summary}")
            if summary.key_topics:
                lines.append(f"Topics: {', '.join(summary.key_topics)}")
        sections.append(lines)

    if profiles:
        lines = ["=== User Profiles ==="]
        for user_id, profile in profiles.items():
            if profile.personality_summary:
                lines.append(f"{profile.username or user_id}: {profile.personality_summary}")
        if len(lines) > 1:
            sections.append(lines)

    if bundle.thread_context:
        lines = ["=== Thread Context ==="]
        lines.extend(f"[{author(m)}]: {m.message_text}" for m in bundle.thread_context)
        sections.append(lines)

    if bundle.relevant_messages:
        lines = ["=== Relevant Past Conversations ==="]
        for m in bundle.relevant_messages:
            lines.append(f"[{m.created_at.strftime('%Y-%m-%d')} - {author(m)}]: {m.message_text}")
        sections.append(lines)

    if bundle.recent_messages:
        lines = ["=== Recent Conversation ==="]
        lines.extend(f"[{author(m)}]: {m.message_text}" for m in bundle.recent_messages)
        sections.append(lines)

    return "\n\n".join("\n".join(lines) for lines in sections)


# ============================================================
# Builder
# ============================================================

class ContextBuilder:
    """Builds ContextBundles from the message, summary and profile stores."""

    def __init__(
        self,
        message_store,
        embedding_model,
        summary_store=None,
        profile_store=None,
        search_engine: Optional[HybridSearchEngine] = None,
        cache: Optional[CacheService] = None,
        quality_scorer: Optional[ContextQualityScorer] = None
    ):
        self.message_store = message_store
        self.embedding_model = embedding_model
        self.summary_store = summary_store
        self.profile_store = profile_store
        self.search_engine = search_engine or HybridSearchEngine(message_store, embedding_model)
        self.cache = cache
        self.quality_scorer = quality_scorer or ContextQualityScorer()

    # ------------------------------------------------------------------
    # Cache keys
    # ------------------------------------------------------------------

    @staticmethod
    def _namespace(channel_id: str) -> str:
        return f"{CONTEXT_NAMESPACE}:{channel_id}"

    @staticmethod
    def _cache_identifier(channel_id: str, query: Optional[str], options: ContextOptions) -> str:
        options_hash = hashlib.sha256(
            options.model_dump_json(exclude={"use_cache"}).encode("utf-8")
        ).hexdigest()[:12]
        return f"{channel_id}:{query or ''}:{options.thread_ts or ''}:{options_hash}"

    async def invalidate_channel(self, channel_id: str) -> int:
        if self.cache is None:
            return 0
        return await self.cache.clear_namespace(self._namespace(channel_id))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def build_context(
        self,
        channel_id: str,
        query: Optional[str] = None,
        options: Optional[ContextOptions] = None
    ) -> ContextBundle:
        """Build a context bundle; returns a minimal bundle on any failure."""
        result = await self.build_context_result(channel_id, query, options)
        return result.value

    async def build_context_result(
        self,
        channel_id: str,
        query: Optional[str] = None,
        options: Optional[ContextOptions] = None
    ) -> Result[ContextBundle]:
        """Like build_context, but reports the failure kind next to the fallback bundle."""
        options = options or ContextOptions()
        use_cache = options.use_cache and self.cache is not None

        try:
            if use_cache:
                identifier = self._cache_identifier(channel_id, query, options)
                cached = await self.cache.get(self._namespace(channel_id), identifier)
                if cached is not None:
                    return Result.success(ContextBundle.model_validate(cached))

            bundle = await self._assemble(channel_id, query, options)

            if use_cache:
                await self.cache.set(
                    self._namespace(channel_id),
                    identifier,
                    bundle.model_dump(mode="json", exclude=_CACHED_EXCLUDE),
                    ttl=getattr(config, 'CONTEXT_CACHE_TTL', 300),
                    tier=CacheTier.HOT
                )
            return Result.success(bundle)

        except Exception as e:
            logger.error("[ContextBuilder] Failed to build context for %s: %r", channel_id, e)
            return Result.failure(e, value=ContextBundle.minimal())

    # ------------------------------------------------------------------
    # Assembly
    # ------------------------------------------------------------------

    async def _relevant_candidates(
        self,
        channel_id: str,
        query: str,
        options: ContextOptions
    ) -> List[ScoredMessage]:
        if options.strategy == "hybrid":
            return await self.search_engine.search(
                query,
                SearchOptions(
                    channel_id=channel_id,
                    limit=options.relevant_limit * 2,
                    semantic_weight=options.semantic_weight,
                    recent_hours=options.hours * 2,
                )
            )

        vector = await self.embedding_model.embed_query(query)
        pairs = await self.message_store.find_similar(
            vector,
            limit=options.relevant_limit * 2,
            threshold=getattr(config, 'CONTEXT_SIMILARITY_THRESHOLD', 0.7),
            channel_id=channel_id
        )
        return [
            ScoredMessage(message=m, semantic_score=similarity, score=similarity)
            for m, similarity in pairs
        ]

    async def _profiles_for(self, messages: List[Message]) -> Dict[str, Any]:
        author_ids = list(dict.fromkeys(m.user_id for m in messages))
        if not author_ids:
            return {}
        profiles = await asyncio.gather(*(self.profile_store.find_by_user_id(uid) for uid in author_ids))
        return {uid: profile for uid, profile in zip(author_ids, profiles) if profile is not None}

    @staticmethod
    async def _none():
        return None

    async def _assemble(self, channel_id: str, query: Optional[str], options: ContextOptions) -> ContextBundle:
        wants_relevant = bool(query and query.strip()) and options.relevant_limit > 0

        tasks = [
            self.message_store.get_recent_messages(channel_id, hours=options.hours, limit=options.recent_limit),
            self._relevant_candidates(channel_id, query, options) if wants_relevant else self._none(),
            self.message_store.find_thread(
                channel_id, options.thread_ts, limit=getattr(config, 'CONTEXT_THREAD_LIMIT', 50)
            ) if options.thread_ts else self._none(),
            self.summary_store.find_by_channel(
                channel_id, getattr(config, 'CONTEXT_SUMMARY_LIMIT', 5)
            ) if options.include_summaries and self.summary_store else self._none(),
            self.message_store.count_by_channel(channel_id),
        ]
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        recent, candidates, thread, summaries, total = outcomes

        relevant: List[ScoredMessage] = []
        metadata = None
        if candidates is not None:
            recent_keys = {m.key for m in recent}
            relevant = [c for c in candidates if c.key not in recent_keys]
            if options.strategy == "hybrid":
                relevant = self.search_engine.rerank(relevant, query, diversity_weight=options.diversity_weight)
            relevant = relevant[:options.relevant_limit]
            metadata = SearchMetadata(
                keyword_matches=sum(1 for r in relevant if r.keyword_score > 0),
                semantic_matches=sum(1 for r in relevant if r.semantic_score > 0),
                hybrid_score=(sum(r.score for r in relevant) / len(relevant)) if relevant else 0.0,
            )

        profiles = None
        if options.include_profiles and self.profile_store is not None:
            profiles = await self._profiles_for(recent)

        bundle = ContextBundle(
            recent_messages=recent,
            relevant_messages=[r.message for r in relevant],
            thread_context=thread,
            conversation_summaries=summaries,
            user_profiles=profiles,
            total_messages=total,
            search_metadata=metadata,
        )
        relevance_scores = [r.score for r in relevant]
        self._fit_window(bundle, relevance_scores, options.max_tokens)
        bundle.context_window.quality = self.quality_scorer.score(bundle, relevance_scores[:len(bundle.relevant_messages)])
        return bundle

    def _fit_window(self, bundle: ContextBundle, relevance_scores: List[float], max_tokens: int):
        """Trim lowest-ranked relevant messages, then oldest recent ones, to fit max_tokens."""
        tokens = estimate_tokens(format_memory_context(bundle))
        while tokens > max_tokens and (bundle.relevant_messages or bundle.recent_messages):
            if bundle.relevant_messages:
                bundle.relevant_messages.pop()
            else:
                bundle.recent_messages.pop(0)
            tokens = estimate_tokens(format_memory_context(bundle))

        bundle.context_window = ContextWindow(
            tokens=tokens,
            messages=len(bundle.recent_messages) + len(bundle.relevant_messages) + len(bundle.thread_context or []),
        )

    # ------------------------------------------------------------------
    # Helpers used by the response layer
    # ------------------------------------------------------------------

    async def search_similar_messages(
        self,
        query: str,
        limit: int = 10,
        threshold: float = 0.7,
        channel_id: Optional[str] = None
    ) -> List[Message]:
        """Best-effort similarity search; [] on failure."""
        try:
            vector = await self.embedding_model.embed_query(query)
            pairs = await self.message_store.find_similar(vector, limit=limit * 2, threshold=threshold, channel_id=channel_id)
            return [m for m, _ in pairs][:limit]
        except Exception as e:
            logger.error("[ContextBuilder] Similar message search failed: %r", e)
            return []

    async def find_trigger_messages(self, channel_id: str, keywords: List[str]) -> List[Message]:
        """Messages close to any of the keywords, each message once."""
        found: Dict[Tuple[str, str], Message] = {}
        for keyword in keywords:
            for message in await self.search_similar_messages(keyword, limit=5, threshold=0.8, channel_id=channel_id):
                found.setdefault(message.key, message)
        return list(found.values())

    async def analyze_conversation_patterns(self, channel_id: str, user_id: str) -> ConversationPatterns:
        """Activity of one user among the channel's last 100 messages."""
        messages = await self.message_store.find_by_channel(channel_id, MessageFilter(limit=100))
        mine = [m for m in messages if m.user_id == user_id]
        if not mine:
            return ConversationPatterns(metadata={"sampled": len(messages)})

        words = Counter(
            word.lower()
            for m in mine
            for word in _WORD_RE.findall(m.message_text)
            if word.lower() not in _STOPWORDS
        )
        hours = Counter(m.created_at.hour for m in mine)

        return ConversationPatterns(
            message_count=len(mine),
            average_length=sum(len(m.message_text) for m in mine) / len(mine),
            common_topics=[word for word, _ in words.most_common(5)],
            active_hours=[hour for hour, _ in sorted(hours.items(), key=lambda kv: (-kv[1], kv[0]))],
            metadata={"sampled": len(messages)},
        )
