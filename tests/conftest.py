"""
Shared fixtures: in-memory store, scripted HPC backend, fast-retry settings.
"""

import pytest

from core.config import OrchestratorSettings
from tuning_engine.jobs.manager import JobManager
from tuning_engine.jobs.models import JobSpec
from tuning_engine.jobs.store import InMemoryJobStore

from fakes import TRAINING_DEFAULTS, FakeHPCClient


@pytest.fixture
def settings():
    return OrchestratorSettings(
        store_backend="memory",
        hpc_base_url="http://hpc.test",
        store_max_retries=2,
        store_backoff_seconds=0.0,
        reconcile_interval_seconds=0.05,
        reconcile_workers=2,
        subscriber_buffer_size=64,
        reconcile_embedded=False,
    )


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def fake_client():
    return FakeHPCClient()


@pytest.fixture
def manager(store, fake_client, settings):
    return JobManager(store, fake_client, settings, training_defaults=dict(TRAINING_DEFAULTS),
                      sleep=lambda s: None)


@pytest.fixture
def make_spec():
    def _make(**overrides) -> JobSpec:
        values = {"owner": "user-1", "base_model": "mistral-7b", "config": {"epochs": 2}}
        values.update(overrides)
        return JobSpec(**values)
    return _make
