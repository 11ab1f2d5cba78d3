"""
Unit tests for the Redis change-notification listener.

The redis client is mocked; tests cover event forwarding and
resubscription after connection errors.
"""

import json
from unittest.mock import MagicMock

import redis

from tuning_engine.jobs.models import ChangeEvent, ChangeKind, Job
from tuning_engine.jobs.redis_store import RedisJobStore
from tuning_engine.jobs.store import JobStore


def make_store():
    client = MagicMock(spec=redis.Redis)
    store = RedisJobStore("redis://mocked", client=client)
    received = []
    # Register on the base class so no listener thread starts
    JobStore.add_listener(store, received.append)
    waits = []
    store._pubsub_stop.wait = waits.append
    return store, received, waits


def job_message():
    event = ChangeEvent.for_job(Job(owner="u1", base_model="mistral-7b", revision=2))
    return {"type": "message", "data": json.dumps(event.to_dict()).encode()}


def stopping_pubsub(store, *messages):
    """Pubsub that yields messages, then stops the listener."""
    pubsub = MagicMock()
    queue = list(messages)

    def get_message(timeout=None):
        if queue:
            return queue.pop(0)
        store._pubsub_stop.set()
        return None

    pubsub.get_message.side_effect = get_message
    return pubsub


class TestListener:
    """Test change forwarding and recovery."""

    def test_forwards_events_and_skips_garbage(self):
        store, received, _ = make_store()
        pubsub = stopping_pubsub(
            store,
            {"type": "subscribe", "data": 1},
            {"type": "message", "data": b"not json"},
            job_message(),
        )
        store.redis.pubsub.side_effect = [pubsub]

        store._listen()

        assert [e.kind for e in received] == [ChangeKind.JOB]
        assert received[0].key == 2
        pubsub.close.assert_called_once()

    def test_resubscribes_after_connection_error(self):
        store, received, waits = make_store()
        broken = MagicMock()
        broken.get_message.side_effect = redis.ConnectionError("connection reset")
        healthy = stopping_pubsub(store, job_message())
        store.redis.pubsub.side_effect = [broken, healthy]

        store._listen()

        assert len(received) == 1
        assert waits == [RedisJobStore.RESUBSCRIBE_BACKOFF_SECONDS]
        broken.close.assert_called_once()
        healthy.subscribe.assert_called_once_with(RedisJobStore.CHANGES_CHANNEL)

    def test_backoff_grows_until_subscribe_succeeds(self):
        store, received, waits = make_store()
        failing = []
        for _ in range(3):
            pubsub = MagicMock()
            pubsub.subscribe.side_effect = redis.ConnectionError("refused")
            failing.append(pubsub)
        store.redis.pubsub.side_effect = failing + [stopping_pubsub(store, job_message())]

        store._listen()

        base = RedisJobStore.RESUBSCRIBE_BACKOFF_SECONDS
        assert waits == [base, base * 2, base * 4]
        assert len(received) == 1
