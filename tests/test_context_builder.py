"""
Tests for context assembly, degradation and prompt formatting.
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio
from datetime import datetime, timedelta, timezone

from fakes import (
    FakeClock,
    FakeEmbeddingProvider,
    FakeMessageStore,
    FakeProfileStore,
    FakeRedis,
    FakeSummaryStore,
)


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _message(ts, text, user="U1", embedding=None, channel="C1", hours_ago=1.0):
    from models.message import Message

    return Message(
        user_id=user,
        channel_id=channel,
        message_text=text,
        message_ts=ts,
        embedding=embedding,
        created_at=NOW - timedelta(hours=hours_ago),
    )


def _builder(store, provider=None, summaries=None, profiles=None, cache=None):
    from core.context_builder import ContextBuilder
    from core.hybrid_search import HybridSearchEngine
    from utils.embedding import EmbeddingModel

    provider = provider or FakeEmbeddingProvider(default=[1.0, 0.0, 0.0, 0.0])
    model = EmbeddingModel(provider=provider)
    return ContextBuilder(
        message_store=store,
        embedding_model=model,
        summary_store=summaries or FakeSummaryStore(),
        profile_store=profiles or FakeProfileStore(),
        search_engine=HybridSearchEngine(store, model, clock=lambda: NOW),
        cache=cache,
    )


def _channel_store():
    near = [1.0, 0.0, 0.0, 0.0]
    return FakeMessageStore([
        _message("100", "How do I rotate the deploy keys?", embedding=near, hours_ago=70),
        _message("200", "Deploy keys live in the vault", user="U2", embedding=near, hours_ago=60),
        _message("300", "Lunch at noon?", user="U3", embedding=[0.0, 1.0, 0.0, 0.0], hours_ago=2),
        _message("400", "Deploy keys rotated this morning", user="U2", embedding=near, hours_ago=1),
    ])


def test_no_query_uses_recent_defaults_and_skips_embeddings():
    provider = FakeEmbeddingProvider()
    store = _channel_store()
    bundle = asyncio.run(_builder(store, provider).build_context("C1"))

    recent_call = next(args for args in store.call_args if args[0] == "get_recent_messages")
    assert recent_call[2] == {"hours": 24, "limit": 20}
    assert provider.calls == 0
    assert store.calls["find_similar"] == 0
    assert bundle.relevant_messages == []
    assert bundle.search_metadata is None
    assert bundle.total_messages == 4


def test_relevant_never_repeats_recent():
    from models.context import ContextOptions

    store = _channel_store()
    options = ContextOptions(recent_limit=1)
    bundle = asyncio.run(_builder(store).build_context("C1", "deploy keys", options))

    recent_keys = {m.key for m in bundle.recent_messages}
    relevant_keys = [m.key for m in bundle.relevant_messages]
    assert recent_keys == {("C1", "400")}
    assert relevant_keys
    assert not recent_keys & set(relevant_keys)
    assert len(relevant_keys) == len(set(relevant_keys))


def test_hybrid_strategy_fills_search_metadata():
    from models.context import ContextOptions

    store = _channel_store()
    options = ContextOptions(recent_limit=1, strategy="hybrid")
    bundle = asyncio.run(_builder(store).build_context("C1", "deploy keys", options))

    # Newer messages win the temporal boost; the recent one is excluded
    assert [m.message_ts for m in bundle.relevant_messages] == ["200", "100"]
    assert bundle.search_metadata is not None
    assert bundle.search_metadata.keyword_matches == 2
    assert bundle.search_metadata.semantic_matches == 2
    assert 0.0 <= bundle.context_window.quality <= 1.0


def test_store_failure_degrades_to_minimal_bundle():
    from core.errors import ErrorKind

    store = _channel_store()
    store.fail_on = {"*"}
    builder = _builder(store)

    bundle = asyncio.run(builder.build_context("C1", "deploy keys"))
    assert bundle.total_messages == 0
    assert bundle.is_empty()

    result = asyncio.run(builder.build_context_result("C1", "deploy keys"))
    assert not result.ok
    assert result.kind == ErrorKind.TRANSIENT
    assert result.value.is_empty()


def test_profiles_are_fetched_once_per_recent_author():
    from models.user_profile import UserProfile

    store = _channel_store()
    profiles = FakeProfileStore([
        UserProfile(user_id="U2", username="dana", personality_summary="Runs the infra team"),
    ])
    bundle = asyncio.run(_builder(store, profiles=profiles).build_context("C1"))

    assert sorted(profiles.lookups) == ["U1", "U2", "U3"]
    assert set(bundle.user_profiles) == {"U2"}


def test_optional_sections_can_be_switched_off():
    from models.context import ContextOptions
    from models.summary import ConversationSummary

    store = _channel_store()
    summaries = FakeSummaryStore([ConversationSummary(channel_id="C1", summary="Key rotation plan")])
    profiles = FakeProfileStore()
    options = ContextOptions(include_summaries=False, include_profiles=False)

    bundle = asyncio.run(_builder(store, summaries=summaries, profiles=profiles).build_context("C1", None, options))
    assert bundle.conversation_summaries is None
    assert bundle.user_profiles is None
    assert summaries.calls == 0
    assert profiles.lookups == []


def test_thread_context_is_included_when_requested():
    from models.context import ContextOptions

    store = _channel_store()
    reply = _message("500", "Rotated staging too", user="U3").model_copy(update={"thread_ts": "400"})
    store.messages[reply.key] = reply

    bundle = asyncio.run(_builder(store).build_context("C1", None, ContextOptions(thread_ts="400")))
    assert [m.message_ts for m in bundle.thread_context] == ["400", "500"]


def test_context_is_cached_per_channel_and_invalidated():
    from models.context import ContextOptions
    from services.cache import CacheService

    clock = FakeClock()
    cache = CacheService(client=FakeRedis(clock), enabled=True, clock=clock)
    store = _channel_store()
    builder = _builder(store, cache=cache)
    options = ContextOptions(use_cache=True)

    async def scenario():
        first = await builder.build_context("C1", None, options)
        second = await builder.build_context("C1", None, options)
        calls_after_hit = store.calls["get_recent_messages"]
        await builder.invalidate_channel("C1")
        await builder.build_context("C1", None, options)
        return first, second, calls_after_hit

    first, second, calls_after_hit = asyncio.run(scenario())
    assert calls_after_hit == 1
    assert store.calls["get_recent_messages"] == 2
    assert [m.key for m in second.recent_messages] == [m.key for m in first.recent_messages]
    assert all(m.embedding is None for m in second.recent_messages)


def test_window_is_trimmed_to_max_tokens():
    from models.context import ContextOptions

    store = FakeMessageStore([
        _message(str(100 + i), "word " * 40, user=f"U{i}", hours_ago=1) for i in range(10)
    ])
    bundle = asyncio.run(_builder(store).build_context("C1", None, ContextOptions(max_tokens=200)))

    assert bundle.context_window.tokens <= 200
    assert 0 < len(bundle.recent_messages) < 10
    # Oldest messages go first
    assert bundle.recent_messages[-1].message_ts == "109"
    assert bundle.context_window.messages == len(bundle.recent_messages)


def test_format_empty_bundle_is_empty_string():
    from core.context_builder import format_memory_context
    from models.context import ContextBundle

    assert format_memory_context(ContextBundle()) == ""
    assert format_memory_context(ContextBundle.minimal()) == ""


def test_format_orders_sections_and_uses_usernames():
    from core.context_builder import format_memory_context
    from models.context import ContextBundle
    from models.summary import ConversationSummary
    from models.user_profile import UserProfile

    bundle = ContextBundle(
        recent_messages=[_message("400", "Deploy keys rotated", user="U2")],
        relevant_messages=[_message("100", "How do I rotate keys?", user="U1")],
        thread_context=[_message("300", "Thread root", user="U1")],
        conversation_summaries=[ConversationSummary(
            channel_id="C1", summary="Talked about keys", key_topics=["keys", "vault"],
            created_at=datetime(2026, 2, 28, tzinfo=timezone.utc),
        )],
        user_profiles={"U2": UserProfile(user_id="U2", username="dana", personality_summary="Infra lead")},
    )
    text = format_memory_context(bundle)

    headers = [
        "=== Recent Conversation History ===",
        "=== User Profiles ===",
        "=== Thread Context ===",
        "=== Relevant Past Conversations ===",
        "=== Recent Conversation ===",
    ]
    positions = [text.index(h) for h in headers]
    assert positions == sorted(positions)
    assert "[2026-02-28] Talked about keys" in text
    assert "Topics: keys, vault" in text
    assert "dana: Infra lead" in text
    assert "[dana]: Deploy keys rotated" in text
    assert "[U1]: Thread root" in text
    assert "- U1]: How do I rotate keys?" in text
    assert "\n\n=== Recent Conversation ===" in text


def test_quality_scorer_bounds():
    from core.context_builder import ContextQualityScorer
    from models.context import ContextBundle

    scorer = ContextQualityScorer()
    assert scorer.score(ContextBundle()) == 0.0

    bundle = ContextBundle(
        recent_messages=[_message(str(i), "hi") for i in range(12)],
        relevant_messages=[_message("a", "x", user="U1"), _message("b", "y", user="U2")],
        thread_context=[_message("c", "z")],
    )
    assert scorer.score(bundle, [1.0, 1.0]) == 1.0
    assert 0.0 < scorer.score(bundle, [0.2, 0.4]) < 1.0


def test_estimate_tokens():
    from core.context_builder import estimate_tokens

    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 2
    assert estimate_tokens("a" * 40) == 12


def test_find_trigger_messages_deduplicates():
    store = _channel_store()
    builder = _builder(store, FakeEmbeddingProvider(default=[1.0, 0.0, 0.0, 0.0]))

    found = asyncio.run(builder.find_trigger_messages("C1", ["deploy", "keys", "vault"]))
    keys = [m.key for m in found]
    assert len(keys) == len(set(keys))
    assert ("C1", "300") not in keys
    assert len(keys) == 3


def test_search_similar_messages_is_best_effort():
    store = _channel_store()
    store.fail_on = {"find_similar"}
    assert asyncio.run(_builder(store).search_similar_messages("deploy")) == []


def test_conversation_patterns():
    store = _channel_store()
    builder = _builder(store)

    patterns = asyncio.run(builder.analyze_conversation_patterns("C1", "U2"))
    assert patterns.message_count == 2
    assert patterns.average_length > 0
    assert "deploy" in patterns.common_topics

    nobody = asyncio.run(builder.analyze_conversation_patterns("C1", "U404"))
    assert nobody.message_count == 0
    assert nobody.average_length == 0.0
    assert nobody.metadata["sampled"] == 4
