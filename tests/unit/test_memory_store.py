"""
Unit tests for the in-memory job store.
"""

from datetime import timedelta

import pytest

from tuning_engine.jobs.errors import ConcurrentModification, JobNotFound
from tuning_engine.jobs.models import ChangeKind, Job, JobStatus, LogLine, MetricPoint, utcnow
from tuning_engine.jobs.store import InMemoryJobStore


def make_job(owner="u1", **kwargs):
    return Job(owner=owner, base_model="mistral-7b", **kwargs)


class TestJobRows:
    """Test job row persistence."""

    def test_insert_sets_revision(self):
        store = InMemoryJobStore()
        stored = store.insert_job(make_job())
        assert stored.revision == 1
        assert store.get_job(stored.id) == stored

    def test_duplicate_insert_rejected(self):
        store = InMemoryJobStore()
        job = store.insert_job(make_job())
        with pytest.raises(ValueError):
            store.insert_job(job)

    def test_update_bumps_revision(self):
        store = InMemoryJobStore()
        job = store.insert_job(make_job())
        updated = store.update_job(job.id, {"progress": 10}, expected_revision=1)
        assert updated.revision == 2
        assert updated.progress == 10
        assert updated.updated_at >= job.updated_at

    def test_stale_revision_rejected(self):
        store = InMemoryJobStore()
        job = store.insert_job(make_job())
        store.update_job(job.id, {"progress": 10})
        with pytest.raises(ConcurrentModification) as exc_info:
            store.update_job(job.id, {"progress": 20}, expected_revision=1)
        assert exc_info.value.actual == 2
        assert store.get_job(job.id).progress == 10

    def test_unknown_job(self):
        with pytest.raises(JobNotFound):
            InMemoryJobStore().update_job("missing", {"progress": 1})

    def test_immutable_fields(self):
        store = InMemoryJobStore()
        job = store.insert_job(make_job())
        with pytest.raises(ValueError):
            store.update_job(job.id, {"base_model": "phi3-mini"})

    def test_status_string_coerced(self):
        store = InMemoryJobStore()
        job = store.insert_job(make_job())
        assert store.update_job(job.id, {"status": "training"}).status == JobStatus.TRAINING

    def test_list_filters_and_order(self):
        store = InMemoryJobStore()
        base = utcnow()
        first = store.insert_job(make_job(owner="a", created_at=base))
        second = store.insert_job(make_job(owner="b", created_at=base + timedelta(seconds=1)))
        third = store.insert_job(make_job(owner="a", status=JobStatus.FAILED,
                                          created_at=base + timedelta(seconds=2)))

        assert [j.id for j in store.list_jobs()] == [third.id, second.id, first.id]
        assert [j.id for j in store.list_jobs(owner="a")] == [third.id, first.id]
        assert [j.id for j in store.list_jobs(status=JobStatus.FAILED)] == [third.id]
        assert [j.id for j in store.list_jobs(limit=1, offset=1)] == [second.id]
        assert store.count_jobs(owner="a") == 2


class TestAppendOnly:
    """Test metric and log tables."""

    def test_metrics_strictly_increasing(self):
        store = InMemoryJobStore()
        accepted = store.append_metrics("j1", [
            MetricPoint(job_id="j1", step=2),
            MetricPoint(job_id="j1", step=1),
        ])
        assert [p.step for p in accepted] == [1, 2]

        accepted = store.append_metrics("j1", [
            MetricPoint(job_id="j1", step=2),
            MetricPoint(job_id="j1", step=3),
        ])
        assert [p.step for p in accepted] == [3]
        assert [p.step for p in store.list_metrics("j1")] == [1, 2, 3]
        assert [p.step for p in store.list_metrics("j1", after_step=1)] == [2, 3]
        assert store.last_metric_step("j1") == 3

    def test_logs_strictly_increasing(self):
        store = InMemoryJobStore()
        store.append_logs("j1", [LogLine(job_id="j1", sequence=i, message=f"l{i}") for i in (1, 2)])
        store.append_logs("j1", [LogLine(job_id="j1", sequence=2, message="dup")])
        lines = store.list_logs("j1")
        assert [l.message for l in lines] == ["l1", "l2"]
        assert store.last_log_sequence("j1") == 2
        assert store.last_log_sequence("other") is None


class TestChangeNotification:
    """Test row-level change events."""

    def test_events_in_commit_order(self):
        store = InMemoryJobStore()
        events = []
        store.add_listener(events.append)

        job = store.insert_job(make_job())
        store.update_job(job.id, {"progress": 5})
        store.append_metrics(job.id, [MetricPoint(job_id=job.id, step=0)])
        store.append_logs(job.id, [LogLine(job_id=job.id, sequence=1, message="hi")])

        assert [(e.kind, e.key) for e in events] == [
            (ChangeKind.JOB, 1),
            (ChangeKind.JOB, 2),
            (ChangeKind.METRIC, 0),
            (ChangeKind.LOG, 1),
        ]
        assert events[1].payload["progress"] == 5

    def test_no_event_for_rejected_writes(self):
        store = InMemoryJobStore()
        store.append_metrics("j1", [MetricPoint(job_id="j1", step=5)])
        events = []
        store.add_listener(events.append)
        store.append_metrics("j1", [MetricPoint(job_id="j1", step=5)])
        assert events == []

    def test_remove_listener(self):
        store = InMemoryJobStore()
        events = []
        remove = store.add_listener(events.append)
        remove()
        store.insert_job(make_job())
        assert events == []

    def test_broken_listener_does_not_block_others(self):
        store = InMemoryJobStore()
        events = []

        def broken(event):
            raise RuntimeError("boom")

        store.add_listener(broken)
        store.add_listener(events.append)
        store.insert_job(make_job())
        assert len(events) == 1
