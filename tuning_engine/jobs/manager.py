"""
Job Manager for fine-tuning orchestration.

This module provides the JobManager class, the only writer of the job,
metric and log stores. Used by the FastAPI routes and the reconciler.

Features:
- Submit jobs (validate, record, hand to the HPC backend)
- Cancel jobs, local commit regardless of the remote outcome
- Reconcile one job: poll status, fetch logs/metrics, apply via the state machine
- Query jobs, metrics and logs

Usage:
    from tuning_engine.jobs import JobManager, JobSpec

    manager = JobManager(store, client)

    job_id = manager.submit_job(JobSpec(owner="user-1", base_model="mistral-7b",
                                        config={"epochs": 3}))
    manager.reconcile_job(job_id)
    manager.cancel_job(job_id)
"""

import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set

from core.config import OrchestratorSettings, load_training_defaults, merge_configs
from core.logger import log_event
from tuning_engine.jobs.errors import (
    ConcurrentModification,
    JobAccessDenied,
    JobNotFound,
    OrchestratorError,
    RemoteError,
    RemoteNotConfigured,
    RemoteNotFound,
    RemoteRejected,
    RemoteUnreachable,
    StoreWriteFailure,
    ValidationError,
)
from tuning_engine.jobs.hpc_client import HPCBackendClient
from tuning_engine.jobs.models import (
    InfraStatus,
    Job,
    JobSpec,
    JobStatus,
    LogLine,
    MetricPoint,
    NormalizedStatus,
    Page,
    utcnow,
)
from tuning_engine.jobs.state_machine import JobStateMachine
from tuning_engine.jobs.store import JobStore
from tuning_engine.jobs.validation import validate_spec

logger = logging.getLogger(__name__)


class JobManager:
    """
    High-level job orchestration API.

    This class provides:
    - Job submission and cancellation
    - Per-job reconciliation against the HPC backend
    - Status queries

    Thread-safe: a job is claimed for the duration of a submission or
    reconciliation pass, and every commit re-reads the row under a per-job
    lock. A result computed before a cancel commit is discarded.

    Example:
        >>> manager = JobManager(InMemoryJobStore(), HPCBackendClient("https://hpc/api"))
        >>> job_id = manager.submit_job(JobSpec(owner="u1", base_model="phi3-mini"))
        >>> manager.get_job(job_id).status
        <JobStatus.QUEUED: 'queued'>
    """

    # Consecutive "remote job not found" polls before the job is failed
    NOT_FOUND_LIMIT = 3

    def __init__(
        self,
        store: JobStore,
        client: HPCBackendClient,
        settings: Optional[OrchestratorSettings] = None,
        state_machine: Optional[JobStateMachine] = None,
        training_defaults: Optional[Dict[str, Any]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize JobManager.

        Args:
            store: Job/metric/log store
            client: HPC backend client
            settings: Orchestrator settings (retries, timeouts, model catalog)
            state_machine: Status rules
            training_defaults: Config merged under every submitted config
            sleep: Sleep function used between store retries
            clock: Current time, used to age unconfirmed submissions
        """
        self.store = store
        self.client = client
        self.settings = settings or OrchestratorSettings()
        self.state_machine = state_machine or JobStateMachine()
        self.training_defaults = (
            training_defaults if training_defaults is not None else load_training_defaults()
        )
        self._sleep = sleep
        self._clock = clock

        self._claims: Set[str] = set()
        self._claims_lock = threading.Lock()
        self._job_locks: Dict[str, threading.RLock] = {}
        self._job_locks_lock = threading.Lock()

        # Backend cursors per job: {"metrics": ..., "logs": ...}
        self._cursors: Dict[str, Dict[str, Optional[str]]] = {}
        self._poll_failures: Dict[str, int] = {}
        self._not_found: Dict[str, int] = {}

        logger.info("JobManager initialized (store=%s, backend=%s)",
                    type(store).__name__, client.base_url or "not configured")

    def close(self):
        """Close store and backend connections."""
        self.client.close()
        self.store.close()

    # =========================================================================
    # Claims and per-job locks
    # =========================================================================

    def _try_claim(self, job_id: str) -> bool:
        with self._claims_lock:
            if job_id in self._claims:
                return False
            self._claims.add(job_id)
            return True

    def _release(self, job_id: str) -> None:
        with self._claims_lock:
            self._claims.discard(job_id)

    def is_claimed(self, job_id: str) -> bool:
        with self._claims_lock:
            return job_id in self._claims

    def _job_lock(self, job_id: str) -> threading.RLock:
        with self._job_locks_lock:
            lock = self._job_locks.get(job_id)
            if lock is None:
                lock = self._job_locks[job_id] = threading.RLock()
            return lock

    def _forget(self, job_id: str) -> None:
        """Drop per-job bookkeeping once a job is terminal."""
        self._cursors.pop(job_id, None)
        self._poll_failures.pop(job_id, None)
        self._not_found.pop(job_id, None)
        with self._job_locks_lock:
            self._job_locks.pop(job_id, None)

    # =========================================================================
    # Store writes
    # =========================================================================

    def _with_store_retry(self, action: str, job_id: str, fn: Callable[[], Any]) -> Any:
        """Run a store write, retrying StoreWriteFailure with exponential backoff."""
        max_retries = self.settings.store_max_retries
        last_err: Optional[StoreWriteFailure] = None
        for attempt in range(max_retries + 1):
            try:
                return fn()
            except ConcurrentModification:
                raise
            except StoreWriteFailure as e:
                last_err = e
                if attempt < max_retries:
                    self._sleep(self.settings.store_backoff_seconds * (2 ** attempt))
        log_event(logger, logging.ERROR, "store_write_failed",
                  job_id=job_id[:8], action=action, error=str(last_err))
        raise last_err

    def _commit(self, job_id: str, compute: Callable[[Job], Dict[str, Any]]) -> Job:
        """
        Compute updates from the freshest row and write them with compare-and-set.

        compute() is called under the per-job lock with the current row and
        returns the updates to apply (empty means nothing to write).

        Raises:
            JobNotFound, StoreWriteFailure
        """
        with self._job_lock(job_id):
            for _ in range(self.settings.store_max_retries + 1):
                job = self.store.get_job(job_id)
                if job is None:
                    raise JobNotFound(job_id)
                updates = compute(job)
                if not updates:
                    return job
                try:
                    return self._with_store_retry(
                        "update", job_id,
                        lambda: self.store.update_job(job_id, updates, expected_revision=job.revision),
                    )
                except ConcurrentModification as e:
                    logger.debug("Revision conflict on job %s: %s", job_id[:8], e)
            log_event(logger, logging.ERROR, "store_write_failed",
                      job_id=job_id[:8], action="update", error="revision conflicts")
            raise StoreWriteFailure(f"Job {job_id} kept changing; update abandoned")

    # =========================================================================
    # Job Submission
    # =========================================================================

    def submit_job(self, spec: JobSpec) -> str:
        """
        Submit a new fine-tuning job.

        Validates the spec, records the job as queued and hands it to the
        backend. Returns as soon as the backend answered (or failed to).

        Args:
            spec: Submission input

        Returns:
            Job ID

        Raises:
            ValidationError: invalid spec; nothing is written or sent
            StoreWriteFailure: the job row could not be recorded
        """
        validate_spec(spec, known_models=self.settings.base_models)

        job = Job(
            owner=spec.owner,
            base_model=spec.base_model,
            name=spec.name or "",
            corpus_ref=spec.corpus_ref,
            config=merge_configs(self.training_defaults, spec.config),
            infra_status=InfraStatus.PENDING,
        )
        job = self._with_store_retry("insert", job.id, lambda: self.store.insert_job(job))
        log_event(logger, logging.INFO, "job_submitted",
                  job_id=job.id[:8], owner=job.owner, model=job.base_model)

        self._try_claim(job.id)
        try:
            self._submit_remote(job)
        except OrchestratorError as e:
            # The row exists; the reconciler picks up whatever state it was left in
            log_event(logger, logging.ERROR, "submit_incomplete", job_id=job.id[:8], error=str(e))
        finally:
            self._release(job.id)
        return job.id

    def _submit_remote(self, job: Job) -> None:
        """Hand a queued job to the backend and commit the outcome (caller holds the claim)."""
        try:
            remote_id = self.client.submit(job)
        except RemoteRejected as e:
            log_event(logger, logging.WARNING, "submit_rejected", job_id=job.id[:8], reason=e.reason)
            self._commit(job.id, lambda j: (
                {} if j.is_terminal
                else self.state_machine.transition(j, JobStatus.FAILED, error_detail=e.reason)
            ))
            self._forget(job.id)
            return
        except RemoteNotConfigured as e:
            log_event(logger, logging.WARNING, "backend_not_configured", job_id=job.id[:8], detail=str(e))
            self._mark_infra(job.id, InfraStatus.NOT_CONFIGURED)
            return
        except RemoteUnreachable as e:
            log_event(logger, logging.WARNING, "backend_unreachable", job_id=job.id[:8], detail=str(e))
            self._mark_infra(job.id, InfraStatus.UNREACHABLE)
            return

        stale = []

        def record(current: Job) -> Dict[str, Any]:
            if current.is_terminal:
                stale.append(current)
                return {}
            return {"remote_job_id": remote_id, "infra_status": None}

        try:
            self._commit(job.id, record)
        except StoreWriteFailure:
            # Row stays pending and is resubmitted later; withdraw this remote copy
            log_event(logger, logging.ERROR, "submit_unrecorded",
                      job_id=job.id[:8], remote_job_id=remote_id)
            self._cancel_remote(job.id, remote_id)
            raise
        if stale:
            # Cancelled while the submission was in flight
            log_event(logger, logging.WARNING, "stale_submission",
                      job_id=job.id[:8], remote_job_id=remote_id, status=stale[0].status.value)
            self._cancel_remote(job.id, remote_id)
            self._forget(job.id)
        else:
            log_event(logger, logging.INFO, "backend_accepted", job_id=job.id[:8], remote_job_id=remote_id)

    def _mark_infra(self, job_id: str, infra: InfraStatus) -> None:
        self._commit(job_id, lambda j: (
            {} if j.is_terminal or j.remote_job_id or j.infra_status == infra
            else {"infra_status": infra}
        ))

    def _submission_in_flight(self, job: Job) -> bool:
        """True while a pending submission is younger than the grace period."""
        if job.infra_status != InfraStatus.PENDING or job.updated_at is None:
            return False
        age = (self._clock() - job.updated_at).total_seconds()
        return age < self.settings.hpc_submit_grace_seconds

    def _retry_submission(self, job: Job) -> None:
        """
        Re-submit a queued job the backend has not accepted yet.

        The row is marked pending with compare-and-set before the backend
        is called, so another reconciler process holding an older revision
        skips it. A failure to record the outcome leaves the row pending
        and the job reconcilable.
        """
        if self._submission_in_flight(job):
            logger.debug("Submission of job %s still in flight, skipping", job.id[:8])
            return
        try:
            claimed = self._with_store_retry(
                "claim_submission", job.id,
                lambda: self.store.update_job(
                    job.id, {"infra_status": InfraStatus.PENDING}, expected_revision=job.revision
                ),
            )
        except ConcurrentModification:
            logger.debug("Job %s changed before resubmission, skipping", job.id[:8])
            return
        log_event(logger, logging.INFO, "submit_retry", job_id=job.id[:8],
                  previous=job.infra_status.value)
        self._submit_remote(claimed)

    # =========================================================================
    # Job Cancellation
    # =========================================================================

    def cancel_job(self, job_id: str, owner: Optional[str] = None) -> Job:
        """
        Cancel a non-terminal job.

        Asks the backend to cancel when the job has a remote id; a remote
        failure is logged and the job is cancelled locally regardless.

        Args:
            job_id: Job ID to cancel
            owner: When given, the caller must own the job

        Returns:
            The committed Job

        Raises:
            JobNotFound, JobAccessDenied, ValidationError (already terminal)
        """
        job = self._require(job_id, owner)
        if job.is_terminal:
            raise ValidationError(f"Job {job_id} is already {job.status.value}")

        if job.remote_job_id:
            self._cancel_remote(job_id, job.remote_job_id)

        try:
            job = self._commit(job_id, lambda j: (
                {} if j.is_terminal else self.state_machine.transition(j, JobStatus.CANCELLED)
            ))
        except StoreWriteFailure:
            return self.store.get_job(job_id) or job

        if job.status == JobStatus.CANCELLED:
            log_event(logger, logging.INFO, "job_cancelled", job_id=job_id[:8], progress=job.progress)
        self._forget(job_id)
        return job

    def _cancel_remote(self, job_id: str, remote_job_id: str) -> bool:
        try:
            return self.client.cancel(remote_job_id)
        except RemoteError as e:
            log_event(logger, logging.WARNING, "remote_cancel_failed",
                      job_id=job_id[:8], remote_job_id=remote_job_id, error=str(e))
            return False

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def reconcile_job(self, job_id: str) -> bool:
        """
        Run one reconciliation pass for a job.

        Polls status, fetches logs and metrics since the last cursors, and
        commits the results through the state machine. Queued jobs waiting
        on infrastructure get their submission retried instead.

        Never raises: failures are logged and the job keeps its last
        committed state.

        Returns:
            True if a pass ran, False if the job was already claimed
        """
        if not self._try_claim(job_id):
            return False
        try:
            job = self.store.get_job(job_id)
            if job is None or job.is_terminal:
                # Finished elsewhere (another process or a cancel)
                self._forget(job_id)
                return True
            if job.remote_job_id is None:
                if job.awaiting_infrastructure:
                    self._retry_submission(job)
                return True
            self._reconcile_remote(job)
        except OrchestratorError as e:
            log_event(logger, logging.ERROR, "reconcile_failed", job_id=job_id[:8], error=str(e))
        except Exception as e:
            log_event(logger, logging.ERROR, "reconcile_crashed", job_id=job_id[:8], error=repr(e))
            logger.debug("Reconcile traceback for %s", job_id[:8], exc_info=True)
        finally:
            self._release(job_id)
        return True

    def _reconcile_remote(self, job: Job) -> None:
        remote_id = job.remote_job_id
        report = self._poll(job)
        if report is None and self._poll_failures.get(job.id):
            # Backend unreachable; skip log/metric fetches this pass
            return

        cursors = self._cursors.setdefault(job.id, {})
        metrics = self._fetch(
            "metrics", job, lambda c: self.client.fetch_metrics_since(remote_id, c, job_id=job.id),
            cursors.get("metrics") or self._stored_cursor(self.store.last_metric_step(job.id)),
        )
        last_seq = self.store.last_log_sequence(job.id)
        logs = self._fetch(
            "logs", job,
            lambda c: self.client.fetch_logs_since(remote_id, c, job_id=job.id, start_sequence=last_seq),
            cursors.get("logs") or self._stored_cursor(last_seq),
        )
        self._commit_results(job, report, metrics, logs)

    @staticmethod
    def _stored_cursor(last_key: Optional[int]) -> Optional[str]:
        return str(last_key) if last_key is not None else None

    def _poll(self, job: Job) -> Optional[NormalizedStatus]:
        try:
            report = self.client.poll_status(job.remote_job_id)
        except RemoteUnreachable as e:
            failures = self._poll_failures.get(job.id, 0) + 1
            self._poll_failures[job.id] = failures
            log_event(logger, logging.WARNING, "poll_unreachable",
                      job_id=job.id[:8], consecutive=failures, error=str(e))
            return None
        except RemoteNotConfigured as e:
            self._poll_failures[job.id] = self._poll_failures.get(job.id, 0) + 1
            log_event(logger, logging.WARNING, "backend_not_configured", job_id=job.id[:8], detail=str(e))
            return None
        except RemoteNotFound:
            missing = self._not_found.get(job.id, 0) + 1
            self._not_found[job.id] = missing
            log_event(logger, logging.WARNING, "remote_job_missing",
                      job_id=job.id[:8], remote_job_id=job.remote_job_id, consecutive=missing)
            self._poll_failures.pop(job.id, None)
            if missing >= self.NOT_FOUND_LIMIT:
                return NormalizedStatus(
                    raw="not_found",
                    status=JobStatus.FAILED,
                    error_detail=f"Remote job {job.remote_job_id} no longer exists on the backend",
                )
            return None

        self._poll_failures.pop(job.id, None)
        self._not_found.pop(job.id, None)
        return report

    def _fetch(self, kind: str, job: Job, fetch: Callable[[Optional[str]], Page], cursor: Optional[str]) -> Page:
        try:
            return fetch(cursor)
        except RemoteError as e:
            log_event(logger, logging.WARNING, f"{kind}_fetch_failed", job_id=job.id[:8], error=str(e))
            return Page(items=[], cursor=cursor)

    def _commit_results(
        self,
        job: Job,
        report: Optional[NormalizedStatus],
        metrics: Page,
        logs: Page,
    ) -> None:
        """Commit one pass's results unless the job went terminal meanwhile."""
        with self._job_lock(job.id):
            current = self.store.get_job(job.id)
            if current is None:
                return
            if current.is_terminal:
                log_event(logger, logging.INFO, "stale_result_discarded",
                          job_id=job.id[:8], status=current.status.value)
                self._forget(job.id)
                return

            cursors = self._cursors.setdefault(job.id, {})
            if metrics.items:
                self._with_store_retry("append_metrics", job.id,
                                       lambda: self.store.append_metrics(job.id, metrics.items))
            cursors["metrics"] = metrics.cursor
            if logs.items:
                self._with_store_retry("append_logs", job.id,
                                       lambda: self.store.append_logs(job.id, logs.items))
            cursors["logs"] = logs.cursor

            if report is None:
                return
            updated = self._commit(job.id, lambda j: self.state_machine.apply_report(j, report))
            if updated.status != current.status:
                log_event(logger, logging.INFO, "status_changed", job_id=job.id[:8],
                          old=current.status.value, new=updated.status.value,
                          progress=updated.progress)
            if updated.is_terminal:
                self._forget(job.id)

    # =========================================================================
    # Job Queries
    # =========================================================================

    def _require(self, job_id: str, owner: Optional[str] = None) -> Job:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if owner is not None and job.owner != owner:
            raise JobAccessDenied(job_id)
        return job

    def get_job(self, job_id: str, owner: Optional[str] = None) -> Optional[Job]:
        """
        Get job by ID.

        Returns:
            Job object or None if not found

        Raises:
            JobAccessDenied: owner given and not matching
        """
        try:
            return self._require(job_id, owner)
        except JobNotFound:
            return None

    def list_jobs(
        self,
        owner: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> List[Job]:
        """
        List jobs with optional filtering, newest first.

        Raises:
            ValidationError: unknown status filter
        """
        status_enum = None
        if status:
            try:
                status_enum = JobStatus(status)
            except ValueError as e:
                valid = [s.value for s in JobStatus]
                raise ValidationError(f"Invalid status filter: {status}. Must be one of: {valid}") from e
        return self.store.list_jobs(owner=owner, status=status_enum, limit=limit, offset=offset)

    def get_metrics(self, job_id: str, owner: Optional[str] = None,
                    after_step: Optional[int] = None) -> List[MetricPoint]:
        self._require(job_id, owner)
        return self.store.list_metrics(job_id, after_step=after_step)

    def get_logs(self, job_id: str, owner: Optional[str] = None,
                 after_sequence: Optional[int] = None) -> List[LogLine]:
        self._require(job_id, owner)
        return self.store.list_logs(job_id, after_sequence=after_sequence)

    def reconcilable_jobs(self, limit: int = 10000) -> List[Job]:
        """Jobs a reconciliation pass has work for: active, or awaiting infrastructure."""
        return [
            j for j in self.store.list_jobs(limit=limit)
            if j.is_active or j.awaiting_infrastructure
        ]

    def get_job_counts(self) -> Dict[str, int]:
        return {s.value: self.store.count_jobs(status=s) for s in JobStatus}
