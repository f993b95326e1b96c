"""
Tests for the outbox: delivery, retries of transient failures, backpressure.
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio


async def _no_sleep(seconds):
    pass


def _outbox(**kwargs):
    from services.outbox import Outbox

    kwargs.setdefault("sleep", _no_sleep)
    return Outbox(**kwargs)


def test_each_subscriber_gets_the_event():
    received = []

    async def first(payload):
        received.append(("first", payload["n"]))

    async def second(payload):
        received.append(("second", payload["n"]))

    async def scenario():
        outbox = _outbox()
        outbox.subscribe("message.stored", first)
        outbox.subscribe("message.stored", second)
        assert outbox.publish("message.stored", {"n": 1})
        await outbox.process_pending()
        return outbox.get_stats()

    stats = asyncio.run(scenario())
    assert sorted(received) == [("first", 1), ("second", 1)]
    assert stats["published"] == 1
    assert stats["delivered"] == 2
    assert stats["pending"] == 0


def test_transient_failures_are_retried():
    from core.errors import StoreUnavailableError

    attempts = []

    async def flaky(payload):
        attempts.append(1)
        if len(attempts) < 3:
            raise StoreUnavailableError("store down")

    async def scenario():
        outbox = _outbox(max_attempts=3)
        outbox.subscribe("message.stored", flaky)
        outbox.publish("message.stored", {})
        await outbox.process_pending()
        return outbox.get_stats()

    stats = asyncio.run(scenario())
    assert len(attempts) == 3
    assert stats["retried"] == 2
    assert stats["delivered"] == 1
    assert stats["failed"] == 0


def test_fatal_failures_are_not_retried():
    attempts = []

    async def broken(payload):
        attempts.append(1)
        raise KeyError("message_id")

    async def scenario():
        outbox = _outbox(max_attempts=5)
        outbox.subscribe("message.stored", broken)
        outbox.publish("message.stored", {})
        await outbox.process_pending()
        return outbox.get_stats()

    stats = asyncio.run(scenario())
    assert len(attempts) == 1
    assert stats["failed"] == 1


def test_full_queue_drops_events():
    async def handler(payload):
        pass

    async def scenario():
        outbox = _outbox(max_size=1)
        outbox.subscribe("message.stored", handler)
        accepted = [outbox.publish("message.stored", {"n": n}) for n in range(3)]
        return accepted, outbox.get_stats()

    accepted, stats = asyncio.run(scenario())
    assert accepted == [True, False, False]
    assert stats["dropped"] == 2


def test_events_without_subscribers_are_accepted():
    async def scenario():
        outbox = _outbox()
        return outbox.publish("summary.created", {}), outbox.get_stats()

    accepted, stats = asyncio.run(scenario())
    assert accepted
    assert stats["pending"] == 0


def test_worker_delivers_in_background_and_drains_on_stop():
    received = []

    async def handler(payload):
        await asyncio.sleep(0)
        received.append(payload["n"])

    async def scenario():
        outbox = _outbox()
        outbox.subscribe("message.stored", handler)
        outbox.start()
        for n in range(5):
            outbox.publish("message.stored", {"n": n})
        await outbox.stop(drain=True)
        return outbox.get_stats()

    stats = asyncio.run(scenario())
    assert received == [0, 1, 2, 3, 4]
    assert stats["delivered"] == 5
    assert stats["pending"] == 0
