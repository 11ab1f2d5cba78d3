"""
Job orchestration module for remote fine-tuning.

This module provides:
- Job models and the status state machine
- Job/metric/log stores (in-memory and Redis) with change notification
- HPC backend client
- JobManager, the single writer, for API and reconciler interaction
- Reconciler loop that keeps jobs in step with the backend
- EventRelay for live per-job and job-list subscriptions

Architecture:
    API process                    Reconciler (same or separate process)
    └── JobManager.submit/cancel   └── JobManager.reconcile_job (thread pool)
            │                                  │
            └──────────► JobStore ◄────────────┘
                            │ change notification
                            ▼
                        EventRelay ──► subscribers (WebSocket)

Usage:
    from tuning_engine.jobs import JobManager, JobSpec, InMemoryJobStore, HPCBackendClient

    manager = JobManager(InMemoryJobStore(), HPCBackendClient("https://hpc.example.org/api"))
    job_id = manager.submit_job(JobSpec(owner="user-1", base_model="mistral-7b"))
"""

from tuning_engine.jobs.errors import (
    OrchestratorError,
    ValidationError,
    JobNotFound,
    JobAccessDenied,
    RemoteError,
    RemoteUnreachable,
    RemoteNotConfigured,
    RemoteNotFound,
    RemoteRejected,
    InvalidTransition,
    StoreWriteFailure,
    ConcurrentModification,
    SubscriberDropped,
)
from tuning_engine.jobs.models import (
    Job,
    JobSpec,
    JobStatus,
    InfraStatus,
    MetricPoint,
    LogLine,
    LogLevel,
    NormalizedStatus,
    Page,
    ChangeEvent,
    ChangeKind,
)
from tuning_engine.jobs.state_machine import JobStateMachine, normalize_status
from tuning_engine.jobs.store import JobStore, InMemoryJobStore
from tuning_engine.jobs.redis_store import RedisJobStore
from tuning_engine.jobs.hpc_client import HPCBackendClient, RetryPolicy
from tuning_engine.jobs.relay import (
    EventRelay,
    Subscription,
    ChangeSource,
    StoreChangeSource,
    StorePollingSource,
)
from tuning_engine.jobs.manager import JobManager
from tuning_engine.jobs.reconciler import Reconciler, build_store

__all__ = [
    # Errors
    "OrchestratorError",
    "ValidationError",
    "JobNotFound",
    "JobAccessDenied",
    "RemoteError",
    "RemoteUnreachable",
    "RemoteNotConfigured",
    "RemoteNotFound",
    "RemoteRejected",
    "InvalidTransition",
    "StoreWriteFailure",
    "ConcurrentModification",
    "SubscriberDropped",
    # Models
    "Job",
    "JobSpec",
    "JobStatus",
    "InfraStatus",
    "MetricPoint",
    "LogLine",
    "LogLevel",
    "NormalizedStatus",
    "Page",
    "ChangeEvent",
    "ChangeKind",
    # State machine
    "JobStateMachine",
    "normalize_status",
    # Stores
    "JobStore",
    "InMemoryJobStore",
    "RedisJobStore",
    # Backend
    "HPCBackendClient",
    "RetryPolicy",
    # Relay
    "EventRelay",
    "Subscription",
    "ChangeSource",
    "StoreChangeSource",
    "StorePollingSource",
    # Orchestration
    "JobManager",
    "Reconciler",
    "build_store",
]
