"""
Integration tests for the Redis job store.

Requires a running Redis server (REDIS_TEST_URL, default
redis://localhost:6379/15). The test database is flushed before each test.
"""

import os
import threading

import pytest
import redis

from tuning_engine.jobs.errors import ConcurrentModification
from tuning_engine.jobs.models import ChangeKind, Job, JobStatus, LogLine, MetricPoint
from tuning_engine.jobs.redis_store import RedisJobStore

REDIS_TEST_URL = os.environ.get("REDIS_TEST_URL", "redis://localhost:6379/15")


@pytest.fixture
def store():
    try:
        store = RedisJobStore(REDIS_TEST_URL, socket_timeout=1.0)
    except redis.RedisError:
        pytest.skip(f"Redis not available at {REDIS_TEST_URL}")
    store.redis.flushdb()
    yield store
    store.close()


def make_job(owner="u1"):
    return Job(owner=owner, base_model="mistral-7b", config={"epochs": 2})


def test_job_round_trip(store):
    job = store.insert_job(make_job())
    loaded = store.get_job(job.id)
    assert loaded.id == job.id
    assert loaded.config == {"epochs": 2}
    assert loaded.revision == 1


def test_compare_and_set(store):
    job = store.insert_job(make_job())
    store.update_job(job.id, {"status": JobStatus.TRAINING, "progress": 20}, expected_revision=1)
    with pytest.raises(ConcurrentModification):
        store.update_job(job.id, {"progress": 30}, expected_revision=1)
    assert store.get_job(job.id).progress == 20


def test_list_by_owner(store):
    mine = store.insert_job(make_job(owner="alice"))
    store.insert_job(make_job(owner="bob"))
    assert [j.id for j in store.list_jobs(owner="alice")] == [mine.id]


def test_append_only_tables(store):
    job = store.insert_job(make_job())
    store.append_metrics(job.id, [MetricPoint(job_id=job.id, step=s, train_loss=1.0) for s in (1, 2)])
    store.append_metrics(job.id, [MetricPoint(job_id=job.id, step=2), MetricPoint(job_id=job.id, step=3)])
    store.append_logs(job.id, [LogLine(job_id=job.id, sequence=1, message="hello")])

    assert [p.step for p in store.list_metrics(job.id)] == [1, 2, 3]
    assert store.last_metric_step(job.id) == 3
    assert [l.message for l in store.list_logs(job.id)] == ["hello"]


def test_change_notifications(store):
    received = []
    done = threading.Event()

    def listener(event):
        received.append(event)
        if event.kind == ChangeKind.METRIC:
            done.set()

    store.add_listener(listener)
    # Give the subscriber thread time to subscribe before writing
    threading.Event().wait(0.5)
    job = store.insert_job(make_job())
    store.append_metrics(job.id, [MetricPoint(job_id=job.id, step=0)])

    assert done.wait(timeout=5.0)
    assert [(e.kind, e.key) for e in received] == [(ChangeKind.JOB, 1), (ChangeKind.METRIC, 0)]
