"""
Unit tests for the event relay.

Tests:
- Snapshot on attach (late attach sees full history in order)
- Incremental ordering and de-duplication
- Overflow drop isolated to the slow subscriber
- Detach, collection subscriptions and the polling source
"""

import threading

import pytest

from tuning_engine.jobs.errors import JobNotFound, SubscriberDropped
from tuning_engine.jobs.models import ChangeEvent, Job, JobStatus, LogLine, MetricPoint
from tuning_engine.jobs.relay import EventRelay, StoreChangeSource, StorePollingSource
from tuning_engine.jobs.store import InMemoryJobStore


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def relay(store):
    relay = EventRelay(store, buffer_size=64)
    relay.start()
    yield relay
    relay.stop()


def add_job(store, owner="u1"):
    return store.insert_job(Job(owner=owner, base_model="mistral-7b"))


def add_metrics(store, job_id, steps):
    store.append_metrics(job_id, [MetricPoint(job_id=job_id, step=s, train_loss=1.0) for s in steps])


def add_logs(store, job_id, sequences):
    store.append_logs(job_id, [LogLine(job_id=job_id, sequence=s, message=f"line {s}") for s in sequences])


def drain(sub):
    events = []
    while True:
        event = sub.get(timeout=0.05)
        if event is None:
            return events
        events.append(event)


class TestSnapshot:
    """Test the first event a subscriber receives."""

    def test_late_attach_receives_history_first(self, store, relay):
        job = add_job(store)
        for step in range(50):
            add_metrics(store, job.id, [step])
        add_logs(store, job.id, range(1, 21))

        sub = relay.attach(job.id)
        first = sub.get(timeout=1.0)

        assert first["type"] == "snapshot"
        assert first["data"]["job"]["id"] == job.id
        assert [m["step"] for m in first["data"]["metrics"]] == list(range(50))
        assert [l["sequence"] for l in first["data"]["logs"]] == list(range(1, 21))

        add_metrics(store, job.id, [50])
        event = sub.get(timeout=1.0)
        assert event["type"] == "metric"
        assert event["key"] == 50
        assert drain(sub) == []

    def test_unknown_job(self, relay):
        with pytest.raises(JobNotFound):
            relay.attach("missing")
        assert relay.stats()["subscribers"] == 0

    def test_reattach_gets_fresh_snapshot(self, store, relay):
        job = add_job(store)
        add_metrics(store, job.id, [1, 2])
        sub = relay.attach(job.id)
        sub.close()
        add_metrics(store, job.id, [3])

        again = relay.attach(job.id)
        snapshot = again.get(timeout=1.0)
        assert [m["step"] for m in snapshot["data"]["metrics"]] == [1, 2, 3]


class TestIncrements:
    """Test incremental delivery after the snapshot."""

    def test_kinds_ordered_independently(self, store, relay):
        job = add_job(store)
        sub = relay.attach(job.id)
        sub.get(timeout=1.0)

        add_logs(store, job.id, [1])
        add_metrics(store, job.id, [10])
        store.update_job(job.id, {"progress": 5})
        add_metrics(store, job.id, [11])
        add_logs(store, job.id, [2])

        events = drain(sub)
        assert [e["key"] for e in events if e["type"] == "metric"] == [10, 11]
        assert [e["key"] for e in events if e["type"] == "log"] == [1, 2]
        job_events = [e for e in events if e["type"] == "job"]
        assert job_events[0]["data"]["progress"] == 5
        assert job_events[0]["key"] == 2

    def test_other_jobs_not_delivered(self, store, relay):
        job = add_job(store)
        other = add_job(store)
        sub = relay.attach(job.id)
        sub.get(timeout=1.0)
        add_metrics(store, other.id, [1])
        assert drain(sub) == []

    def test_duplicates_suppressed(self, store, relay):
        job = add_job(store)
        add_metrics(store, job.id, [1, 2])
        sub = relay.attach(job.id)
        sub.get(timeout=1.0)

        # Replayed upstream event already covered by the snapshot
        relay.publish(ChangeEvent.for_metric(MetricPoint(job_id=job.id, step=2)))
        relay.publish(ChangeEvent.for_metric(MetricPoint(job_id=job.id, step=3)))
        relay.publish(ChangeEvent.for_metric(MetricPoint(job_id=job.id, step=3)))

        assert [e["key"] for e in drain(sub)] == [3]

    def test_two_sources_deduplicated(self, store):
        poller = StorePollingSource(store, interval_seconds=60)
        relay = EventRelay(store, sources=[StoreChangeSource(store), poller], buffer_size=64)
        relay.start()
        try:
            job = add_job(store)
            sub = relay.attach(job.id)
            sub.get(timeout=1.0)
            add_metrics(store, job.id, [1, 2])
            poller.poll_once()
            assert [e["key"] for e in drain(sub) if e["type"] == "metric"] == [1, 2]
        finally:
            relay.stop()


class TestBackpressure:
    """Test bounded buffers."""

    def test_overflow_drops_only_slow_subscriber(self, store, relay):
        job = add_job(store)
        slow = relay.attach(job.id, buffer_size=4)
        fast = relay.attach(job.id, buffer_size=64)
        received = [fast.get(timeout=1.0)]

        for step in range(10):
            add_metrics(store, job.id, [step])
            received.append(fast.get(timeout=1.0))

        assert slow.dropped
        with pytest.raises(SubscriberDropped):
            slow.get(timeout=1.0)
        with pytest.raises(SubscriberDropped):
            slow.get(timeout=1.0)

        assert received[0]["type"] == "snapshot"
        assert [e["key"] for e in received[1:]] == list(range(10))
        assert relay.stats() == {"subscribers": 1, "dropped": 1}

    def test_publisher_never_blocks(self, store, relay):
        job = add_job(store)
        relay.attach(job.id, buffer_size=1)
        done = threading.Event()

        def write():
            add_metrics(store, job.id, range(100))
            for step in range(100, 200):
                add_metrics(store, job.id, [step])
            done.set()

        threading.Thread(target=write, daemon=True).start()
        assert done.wait(timeout=5.0)


class TestDetach:
    """Test closing subscriptions."""

    def test_close_discards_buffer_and_spares_others(self, store, relay):
        job = add_job(store)
        first = relay.attach(job.id)
        second = relay.attach(job.id)
        first.close()

        add_metrics(store, job.id, [1])
        assert first.get(timeout=0.1) is None
        assert first.closed
        events = drain(second)
        assert [e["type"] for e in events] == ["snapshot", "metric"]
        assert relay.stats()["subscribers"] == 1

    def test_iteration_stops_on_close(self, store, relay):
        job = add_job(store)
        sub = relay.attach(job.id)
        seen = []
        got_first = threading.Event()

        def consume():
            for event in sub:
                seen.append(event["type"])
                got_first.set()

        thread = threading.Thread(target=consume, daemon=True)
        thread.start()
        assert got_first.wait(timeout=3.0)
        sub.close()
        thread.join(timeout=3.0)
        assert not thread.is_alive()
        assert seen[0] == "snapshot"

    def test_relay_stop_closes_subscribers(self, store):
        relay = EventRelay(store)
        relay.start()
        job = add_job(store)
        sub = relay.attach(job.id)
        relay.stop()
        assert sub.closed


class TestCollection:
    """Test job-list subscriptions."""

    def test_owner_filtered_job_events(self, store, relay):
        mine = add_job(store, owner="alice")
        add_job(store, owner="bob")

        sub = relay.attach_collection(owner="alice")
        snapshot = sub.get(timeout=1.0)
        assert [j["id"] for j in snapshot["data"]["jobs"]] == [mine.id]

        newer = add_job(store, owner="alice")
        add_job(store, owner="bob")
        store.update_job(mine.id, {"status": JobStatus.PREPROCESSING})
        add_metrics(store, mine.id, [1])

        events = drain(sub)
        assert [(e["job_id"], e["type"]) for e in events] == [(newer.id, "job"), (mine.id, "job")]


class TestPollingSource:
    """Test the poll-based source on its own."""

    def test_emits_only_changes_after_start(self, store):
        job = add_job(store)
        add_metrics(store, job.id, [1])
        events = []
        source = StorePollingSource(store, interval_seconds=60)
        source.start(events.append)
        try:
            assert source.poll_once() == 0
            add_metrics(store, job.id, [2, 3])
            add_logs(store, job.id, [1])
            store.update_job(job.id, {"progress": 12})
            assert source.poll_once() == 4
            assert [(e.kind.value, e.key) for e in events] == [
                ("job", 2), ("metric", 2), ("metric", 3), ("log", 1)
            ]
            assert source.poll_once() == 0
        finally:
            source.stop()
