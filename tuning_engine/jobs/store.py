"""
Job/metric/log store interface and the in-process implementation.

A store holds three tables keyed by job id:
- jobs: one row per job, point updates with a monotonically increasing revision
- metrics: append-only, strictly increasing step per job
- logs: append-only, strictly increasing sequence per job

Every committed write emits a ChangeEvent to the registered listeners
(row-level change notification). Listeners are called in commit order and
must not call back into the store.
"""

import dataclasses
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, List, Optional

from tuning_engine.jobs.errors import ConcurrentModification, JobNotFound
from tuning_engine.jobs.models import (
    ChangeEvent,
    InfraStatus,
    Job,
    JobStatus,
    LogLine,
    MetricPoint,
    utcnow,
)

logger = logging.getLogger(__name__)

ChangeListener = Callable[[ChangeEvent], None]

# Fields that never change after the row is created
IMMUTABLE_FIELDS = frozenset({"id", "owner", "base_model", "corpus_ref", "config", "created_at"})


class JobStore(ABC):
    """
    Abstract store for jobs, metrics and logs with change notification.

    Implementations: InMemoryJobStore (tests, single-process dev) and
    RedisJobStore (shared between the API and reconciler processes).
    """

    def __init__(self):
        self._listeners: List[ChangeListener] = []
        self._listeners_lock = threading.Lock()

    # =========================================================================
    # Jobs
    # =========================================================================

    @abstractmethod
    def insert_job(self, job: Job) -> Job:
        """Insert a new job row (revision 1). Raises StoreWriteFailure."""

    @abstractmethod
    def get_job(self, job_id: str) -> Optional[Job]:
        """Get job by ID, or None."""

    @abstractmethod
    def update_job(
        self,
        job_id: str,
        updates: Dict[str, Any],
        expected_revision: Optional[int] = None
    ) -> Job:
        """
        Apply a point update and return the committed row.

        Raises:
            JobNotFound: unknown job
            ConcurrentModification: expected_revision does not match
            StoreWriteFailure: persistence error
        """

    @abstractmethod
    def list_jobs(
        self,
        owner: Optional[str] = None,
        status: Optional[JobStatus] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Job]:
        """List jobs, newest first."""

    def count_jobs(self, owner: Optional[str] = None, status: Optional[JobStatus] = None) -> int:
        return len(self.list_jobs(owner=owner, status=status, limit=10**9))

    # =========================================================================
    # Metrics / Logs
    # =========================================================================

    @abstractmethod
    def append_metrics(self, job_id: str, points: Iterable[MetricPoint]) -> List[MetricPoint]:
        """Append points with step greater than the last stored step; return those accepted."""

    @abstractmethod
    def append_logs(self, job_id: str, lines: Iterable[LogLine]) -> List[LogLine]:
        """Append lines with sequence greater than the last stored one; return those accepted."""

    @abstractmethod
    def list_metrics(self, job_id: str, after_step: Optional[int] = None) -> List[MetricPoint]:
        """Metrics ascending by step (optionally only those after after_step)."""

    @abstractmethod
    def list_logs(self, job_id: str, after_sequence: Optional[int] = None) -> List[LogLine]:
        """Logs ascending by sequence (optionally only those after after_sequence)."""

    def last_metric_step(self, job_id: str) -> Optional[int]:
        metrics = self.list_metrics(job_id)
        return metrics[-1].step if metrics else None

    def last_log_sequence(self, job_id: str) -> Optional[int]:
        logs = self.list_logs(job_id)
        return logs[-1].sequence if logs else None

    # =========================================================================
    # Lifecycle / notification
    # =========================================================================

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        with self._listeners_lock:
            self._listeners.clear()

    def add_listener(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a change listener. Returns a function that removes it."""
        with self._listeners_lock:
            self._listeners.append(listener)

        def remove():
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def _notify(self, event: ChangeEvent) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception as e:  # one broken listener must not stop the others
                logger.warning("Change listener %r failed: %s", listener, e)

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def apply_updates(job: Job, updates: Dict[str, Any]) -> Job:
        """Return a copy of job with updates applied and revision bumped."""
        illegal = IMMUTABLE_FIELDS.intersection(updates)
        if illegal:
            raise ValueError(f"Cannot update immutable fields: {sorted(illegal)}")
        values = dict(updates)
        if isinstance(values.get("status"), str):
            values["status"] = JobStatus(values["status"])
        if isinstance(values.get("infra_status"), str):
            values["infra_status"] = InfraStatus(values["infra_status"])
        values["revision"] = job.revision + 1
        values["updated_at"] = utcnow()
        return dataclasses.replace(job, **values)


class InMemoryJobStore(JobStore):
    """
    Thread-safe in-process store.

    Notifications are dispatched while the write lock is held, so listeners
    observe changes in exactly the commit order.
    """

    def __init__(self):
        super().__init__()
        self._lock = threading.RLock()
        self._jobs: Dict[str, Job] = {}
        self._metrics: Dict[str, List[MetricPoint]] = {}
        self._logs: Dict[str, List[LogLine]] = {}

    def insert_job(self, job: Job) -> Job:
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job {job.id} already exists")
            stored = dataclasses.replace(job, revision=1, updated_at=utcnow())
            self._jobs[job.id] = stored
            self._notify(ChangeEvent.for_job(stored))
        logger.info("Inserted job %s", job.id[:8])
        return stored

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def update_job(self, job_id, updates, expected_revision=None):
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFound(job_id)
            if expected_revision is not None and job.revision != expected_revision:
                raise ConcurrentModification(job_id, expected_revision, job.revision)
            if not updates:
                return job
            updated = self.apply_updates(job, updates)
            self._jobs[job_id] = updated
            self._notify(ChangeEvent.for_job(updated))
            logger.debug("Updated job %s: %s", job_id[:8], list(updates.keys()))
            return updated

    def list_jobs(self, owner=None, status=None, limit=100, offset=0):
        with self._lock:
            jobs = [
                j for j in self._jobs.values()
                if (owner is None or j.owner == owner) and (status is None or j.status == status)
            ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[offset:offset + limit]

    def append_metrics(self, job_id, points):
        with self._lock:
            stored = self._metrics.setdefault(job_id, [])
            last = stored[-1].step if stored else None
            accepted = []
            for point in sorted(points, key=lambda p: p.step):
                if last is not None and point.step <= last:
                    continue
                stored.append(point)
                accepted.append(point)
                last = point.step
                self._notify(ChangeEvent.for_metric(point))
        return accepted

    def append_logs(self, job_id, lines):
        with self._lock:
            stored = self._logs.setdefault(job_id, [])
            last = stored[-1].sequence if stored else None
            accepted = []
            for line in sorted(lines, key=lambda l: l.sequence):
                if last is not None and line.sequence <= last:
                    continue
                stored.append(line)
                accepted.append(line)
                last = line.sequence
                self._notify(ChangeEvent.for_log(line))
        return accepted

    def list_metrics(self, job_id, after_step=None):
        with self._lock:
            points = list(self._metrics.get(job_id, []))
        if after_step is not None:
            points = [p for p in points if p.step > after_step]
        return points

    def list_logs(self, job_id, after_sequence=None):
        with self._lock:
            lines = list(self._logs.get(job_id, []))
        if after_sequence is not None:
            lines = [l for l in lines if l.sequence > after_sequence]
        return lines
