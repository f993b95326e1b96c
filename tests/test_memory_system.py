"""
Tests for the wired MemorySystem: ingestion flow, background embedding, context.
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio

from fakes import FakeMessageStore, FakePool, build_system


def _event(ts, text, channel="C1", user="U1"):
    return {"channel_id": channel, "user_id": user, "message_text": text, "message_ts": ts}


def test_ingest_stores_windows_and_embeds_in_background():
    store = FakeMessageStore()
    system = build_system(store)

    async def scenario():
        stored = await system.ingest_message(_event("100", "Deploy keys rotated"))
        before = store.messages[stored.key].embedding
        delivered = await system.outbox.process_pending()
        return stored, before, delivered

    stored, before, delivered = asyncio.run(scenario())
    assert before is None
    assert delivered == 1
    assert store.messages[stored.key].embedding == [1.0, 0.0, 0.0, 0.0]
    assert [m.message_ts for m in system.get_window("C1")] == ["100"]


def test_duplicate_ingestion_queues_nothing_new():
    store = FakeMessageStore()
    system = build_system(store)

    async def scenario():
        first = await system.ingest_message(_event("100", "hello"))
        second = await system.ingest_message(_event("100", "hello again"))
        return first, second

    first, second = asyncio.run(scenario())
    assert second.id == first.id
    assert system.outbox.get_stats()["published"] == 1
    assert len(system.get_window("C1")) == 1


def test_ingestion_invalidates_cached_context():
    from models.context import ContextOptions

    system = build_system()
    options = ContextOptions(use_cache=True)

    async def scenario():
        await system.ingest_message(_event("100", "first"))
        before = await system.build_context("C1", None, options)
        await system.ingest_message(_event("101", "second"))
        after = await system.build_context("C1", None, options)
        return before, after

    before, after = asyncio.run(scenario())
    assert [m.message_ts for m in before.recent_messages] == ["100"]
    assert [m.message_ts for m in after.recent_messages] == ["100", "101"]


def test_build_and_format_context_after_backfill():
    system = build_system()

    async def scenario():
        await system.ingest_message(_event("100", "How do I rotate the deploy keys?"))
        await system.ingest_message(_event("101", "Ask in the infra channel", user="U2"))
        attached = await system.backfill_embeddings()
        bundle = await system.build_context("C1", "deploy keys")
        return attached, bundle

    attached, bundle = asyncio.run(scenario())
    assert attached == 2
    assert len(bundle.recent_messages) == 2
    text = system.format_context(bundle)
    assert "=== Recent Conversation ===" in text
    assert "[U2]: Ask in the infra channel" in text


def test_health_and_metrics():
    pool = FakePool(healthy=True)
    system = build_system(pool=pool)

    async def scenario():
        health = await system.health()
        await system.close()
        return health

    health = asyncio.run(scenario())
    assert health["healthy"] is True
    assert health["cache"] == {"reachable": True}
    metrics = system.metrics()
    assert set(metrics) == {"pool", "cache", "embeddings", "window", "outbox"}
    assert pool.closed


def test_cli_parses_commands(monkeypatch):
    import main

    calls = []

    async def fake_command(args):
        calls.append(args)

    monkeypatch.setattr(main, "_run_command", fake_command)
    main.main(["backfill", "--limit", "7"])
    main.main(["--db-path", "/tmp/db", "archive", "--days", "30"])

    assert calls[0].command == "backfill" and calls[0].limit == 7
    assert calls[1].command == "archive" and calls[1].days == 30 and calls[1].db_path == "/tmp/db"
