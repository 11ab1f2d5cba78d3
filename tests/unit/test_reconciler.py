"""
Unit tests for the background reconciler.
"""

import threading
import time

import pytest

from fakes import drive_to, report
from tuning_engine.jobs.errors import RemoteUnreachable
from tuning_engine.jobs.models import JobStatus
from tuning_engine.jobs.reconciler import Reconciler, build_store
from tuning_engine.jobs.store import InMemoryJobStore


@pytest.fixture
def reconciler(manager):
    reconciler = Reconciler(manager, interval_seconds=0.05, worker_count=2)
    yield reconciler
    reconciler.stop()


class TestTick:
    """Test single ticks."""

    def test_run_once_reconciles_active_jobs(self, manager, fake_client, reconciler, make_spec):
        first = manager.submit_job(make_spec())
        second = manager.submit_job(make_spec())
        fake_client.statuses["hpc-1"] = report("training", progress=30)
        fake_client.statuses["hpc-2"] = report("failed", error="OOM")

        assert reconciler.run_once(timeout=5.0) == 2

        assert manager.get_job(first).status == JobStatus.TRAINING
        assert manager.get_job(second).status == JobStatus.FAILED
        assert reconciler.run_once(timeout=5.0) == 1
        assert reconciler.stats()["passes"] == 3

    def test_terminal_jobs_not_scheduled(self, manager, reconciler, make_spec):
        job_id = manager.submit_job(make_spec())
        manager.cancel_job(job_id)
        assert reconciler.run_once(timeout=5.0) == 0

    def test_awaiting_infrastructure_resubmitted(self, manager, fake_client, reconciler, make_spec):
        fake_client.submit_error = RemoteUnreachable("down")
        job_id = manager.submit_job(make_spec())
        fake_client.submit_error = None

        reconciler.run_once(timeout=5.0)
        assert manager.get_job(job_id).remote_job_id == "hpc-1"

    def test_stalled_job_not_scheduled_twice(self, manager, fake_client, reconciler, make_spec):
        job_id = manager.submit_job(make_spec())
        release = threading.Event()
        entered = threading.Event()

        def block(remote_id):
            entered.set()
            release.wait(timeout=5.0)

        fake_client.on_poll = block
        assert reconciler.tick() == 1
        assert entered.wait(timeout=5.0)
        assert reconciler.tick() == 0
        assert reconciler.stats()["in_flight"] == 1
        assert manager.is_claimed(job_id)

        release.set()
        reconciler.stop()
        assert fake_client.polls == 1

    def test_stalled_job_does_not_block_others(self, manager, fake_client, reconciler, make_spec):
        slow = manager.submit_job(make_spec())
        fast = manager.submit_job(make_spec())
        release = threading.Event()

        def block(remote_id):
            if remote_id == "hpc-1":
                release.wait(timeout=5.0)

        fake_client.on_poll = block
        fake_client.statuses["hpc-2"] = report("training")
        reconciler.tick()

        deadline = time.monotonic() + 5.0
        while manager.get_job(fast).status != JobStatus.TRAINING and time.monotonic() < deadline:
            time.sleep(0.01)
        assert manager.get_job(fast).status == JobStatus.TRAINING
        assert manager.get_job(slow).status == JobStatus.QUEUED
        release.set()


class TestLoop:
    """Test the background thread."""

    def test_start_and_stop(self, manager, fake_client, reconciler, make_spec):
        job_id = manager.submit_job(make_spec())
        fake_client.statuses["hpc-1"] = report("completed")

        reconciler.start()
        assert reconciler.running
        deadline = time.monotonic() + 5.0
        while not manager.get_job(job_id).is_terminal and time.monotonic() < deadline:
            time.sleep(0.02)
        reconciler.stop()

        assert manager.get_job(job_id).status == JobStatus.COMPLETE
        assert not reconciler.running
        assert reconciler.stats()["ticks"] >= 1

    def test_job_failure_does_not_stop_loop(self, manager, fake_client, reconciler, make_spec):
        job_id = manager.submit_job(make_spec())

        def crash(remote_id):
            raise RuntimeError("bug")

        fake_client.on_poll = crash
        reconciler.run_once(timeout=5.0)

        fake_client.on_poll = None
        job = drive_to(manager, fake_client, job_id, report("training"))
        assert job.status == JobStatus.TRAINING


def test_build_store_memory(settings):
    assert isinstance(build_store(settings), InMemoryJobStore)
