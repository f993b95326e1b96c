"""
Tests for the HTTP API with an in-memory MemorySystem (no lifespan, no scheduler).
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from fastapi.testclient import TestClient

from fakes import FakeMessageStore, build_system


@pytest.fixture
def api_client():
    import api

    store = FakeMessageStore()
    system = build_system(store)
    api.app.state.system = system
    try:
        yield TestClient(api.app), system, store
    finally:
        api.app.state.system = None


def _post_message(client, ts, text, user="U1", channel="C1"):
    return client.post("/v1/messages", json={
        "channel_id": channel, "user_id": user, "message_text": text, "message_ts": ts,
    })


def test_root_and_health(api_client):
    client, _, _ = api_client

    assert client.get("/").json()["health"] == "/health"
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "healthy"


def test_metrics_include_process_memory(api_client):
    client, _, _ = api_client

    body = client.get("/metrics").json()
    assert body["memory"]["rss_mb"] > 0
    assert {"pool", "cache", "embeddings", "window", "outbox"} <= set(body)


def test_ingest_is_idempotent(api_client):
    client, _, store = api_client

    first = _post_message(client, "100", "Deploy keys rotated")
    again = _post_message(client, "100", "Deploy keys rotated")

    assert first.status_code == 200
    assert first.json()["id"] == again.json()["id"]
    assert first.json()["embedding"] is None
    assert len(store.messages) == 1


def test_ingest_reports_unavailable_store(api_client):
    client, _, store = api_client
    store.fail_on = {"create_message"}

    response = _post_message(client, "100", "hello")
    assert response.status_code == 503


def test_context_returns_bundle_and_prompt_text(api_client):
    client, _, _ = api_client
    _post_message(client, "100", "How do I rotate the deploy keys?")
    _post_message(client, "101", "Ask in the infra channel", user="U2")

    response = client.post("/v1/context", json={"channel_id": "C1", "query": "deploy keys"})
    assert response.status_code == 200
    body = response.json()
    assert [m["message_ts"] for m in body["bundle"]["recent_messages"]] == ["100", "101"]
    assert "[U2]: Ask in the infra channel" in body["formatted"]


def test_context_never_fails(api_client):
    client, _, store = api_client
    store.fail_on = {"*"}

    response = client.post("/v1/context", json={"channel_id": "C1", "query": "anything"})
    assert response.status_code == 200
    assert response.json()["formatted"] == ""
    assert response.json()["bundle"]["total_messages"] == 0


def test_search_and_rerank(api_client):
    client, system, _ = api_client
    _post_message(client, "100", "TypeScript generics explained")
    _post_message(client, "101", "TypeScript generics explained", user="U2")
    _post_message(client, "102", "Weekend plans", user="U3")

    import asyncio
    asyncio.run(system.backfill_embeddings())

    plain = client.post("/v1/search", json={"query": "TypeScript generics", "options": {"channel_id": "C1"}})
    assert plain.status_code == 200
    assert plain.json()["count"] >= 2
    assert all(r["message"]["embedding"] is None for r in plain.json()["results"])

    reranked = client.post("/v1/search", json={
        "query": "TypeScript generics",
        "options": {"channel_id": "C1"},
        "rerank": True,
        "diversity_weight": 0.2,
    }).json()["results"]
    scores = [r["score"] for r in reranked]
    assert scores == sorted(scores, reverse=True)
    # The repeated text drops to the bottom with 1 - 0.8 * similarity of its score
    assert reranked[-1]["message"]["message_text"] == "TypeScript generics explained"
    assert scores[-1] == pytest.approx(scores[0] * 0.2, rel=1e-3)


def test_search_failure_is_a_retryable_503(api_client):
    from api import SEARCH_UNAVAILABLE

    client, _, store = api_client
    store.fail_on = {"find_similar"}

    response = client.post("/v1/search", json={"query": "TypeScript", "options": {"channel_id": "C1"}})
    assert response.status_code == 503
    assert response.headers["retry-after"] == "5"
    assert response.json()["detail"]["message"] == SEARCH_UNAVAILABLE


def test_channel_window(api_client):
    client, _, _ = api_client
    for ts in ("100", "101", "102"):
        _post_message(client, ts, f"message {ts}")

    window = client.get("/v1/channels/C1/window", params={"limit": 2}).json()
    assert [m["message_ts"] for m in window] == ["101", "102"]
    assert client.get("/v1/channels/C9/window").json() == []


def test_not_ready_without_system():
    import api

    api.app.state.system = None
    response = TestClient(api.app).get("/health")
    assert response.status_code == 503
