"""
Job state machine.

Owns the rules for how a job's status may change and computes the field
updates a transition implies. It never writes to a store: callers (the
JobManager) commit the returned updates.

States:
    queued -> preprocessing -> training -> validating -> complete
    failed / cancelled reachable from any non-terminal state

Usage:
    machine = JobStateMachine()
    updates = machine.transition(job, JobStatus.TRAINING, backend_reported=True)
    store.update_job(job.id, updates, expected_revision=job.revision)
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from core.logger import log_event
from tuning_engine.jobs.errors import InvalidTransition
from tuning_engine.jobs.models import (
    FORWARD_SEQUENCE,
    TERMINAL_STATUSES,
    Job,
    JobStatus,
    NormalizedStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


# Backend vocabulary (including SLURM job states) -> JobStatus
STATUS_ALIASES: Dict[str, JobStatus] = {
    "queued": JobStatus.QUEUED,
    "pending": JobStatus.QUEUED,
    "submitted": JobStatus.QUEUED,
    "configuring": JobStatus.PREPROCESSING,
    "preprocessing": JobStatus.PREPROCESSING,
    "running": JobStatus.TRAINING,
    "training": JobStatus.TRAINING,
    "validating": JobStatus.VALIDATING,
    "evaluating": JobStatus.VALIDATING,
    "complete": JobStatus.COMPLETE,
    "completed": JobStatus.COMPLETE,
    "succeeded": JobStatus.COMPLETE,
    "failed": JobStatus.FAILED,
    "timeout": JobStatus.FAILED,
    "out_of_memory": JobStatus.FAILED,
    "node_fail": JobStatus.FAILED,
    "boot_fail": JobStatus.FAILED,
    "cancelled": JobStatus.CANCELLED,
    "canceled": JobStatus.CANCELLED,
}


def normalize_status(raw: Any) -> Optional[JobStatus]:
    """
    Map a backend status string onto JobStatus.

    Returns None for unrecognized or malformed input. SLURM suffixes such
    as "CANCELLED by 1234" are tolerated.
    """
    if not isinstance(raw, str) or not raw.strip():
        return None
    text = raw.strip().lower().replace("-", "_")
    token = text.split()[0]
    return STATUS_ALIASES.get(text) or STATUS_ALIASES.get(token)


def _forward_index(status: JobStatus) -> int:
    return FORWARD_SEQUENCE.index(status)


def check_transition(
    current: JobStatus,
    target: JobStatus,
    backend_reported: bool = False
) -> None:
    """
    Validate a status change.

    Args:
        current: Current job status
        target: Requested status
        backend_reported: True when the backend reported the target state;
            only then may forward states be skipped.

    Raises:
        InvalidTransition: if the edge is not allowed
    """
    if current in TERMINAL_STATUSES:
        raise InvalidTransition(current, target, "job is terminal")
    if target in (JobStatus.FAILED, JobStatus.CANCELLED):
        return
    if target == current:
        raise InvalidTransition(current, target, "already in state")

    step = _forward_index(target) - _forward_index(current)
    if step < 0:
        raise InvalidTransition(current, target, "backward move")
    if step > 1 and not backend_reported:
        raise InvalidTransition(current, target, "skips forward states")


class JobStateMachine:
    """
    Authoritative status rules for a job.

    All methods are pure with respect to the job: they return a dict of
    field updates (possibly empty) and leave the Job object untouched.
    """

    def transition(
        self,
        job: Job,
        target: JobStatus,
        backend_reported: bool = False,
        error_detail: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """
        Compute updates for moving job to target.

        Side effects encoded in the updates:
        - any non-queued state sets started_at if unset
        - terminal states set completed_at
        - complete pins progress to 100
        - failed records error_detail; other states clear it

        Raises:
            InvalidTransition: if the edge is not allowed
        """
        check_transition(job.status, target, backend_reported)
        now = now or utcnow()

        updates: Dict[str, Any] = {"status": target}
        if target != JobStatus.QUEUED and job.started_at is None:
            updates["started_at"] = now
        if target in TERMINAL_STATUSES:
            started = updates.get("started_at", job.started_at)
            # completed_at never precedes started_at
            updates["completed_at"] = max(now, started) if started else now
        if target == JobStatus.COMPLETE:
            updates["progress"] = 100
        if target == JobStatus.FAILED:
            updates["error_detail"] = error_detail or "Job failed"
        elif job.error_detail is not None:
            updates["error_detail"] = None
        if job.infra_status is not None and target != JobStatus.QUEUED:
            updates["infra_status"] = None

        logger.debug("Job %s: %s -> %s", job.id[:8], job.status.value, target.value)
        return updates

    def progress_update(self, job: Job, progress: Optional[int]) -> Dict[str, Any]:
        """Monotonic progress update; lower or equal values are ignored."""
        if progress is None or job.is_terminal:
            return {}
        value = max(0, min(100, int(progress)))
        if value <= job.progress:
            return {}
        return {"progress": value}

    def apply_report(self, job: Job, report: NormalizedStatus) -> Dict[str, Any]:
        """
        Apply a normalized backend status report.

        - terminal job: no updates
        - unrecognized status: warning, status unchanged (progress still applied)
        - backward/illegal edge: anomaly logged, status unchanged
        """
        if job.is_terminal:
            log_event(logger, logging.DEBUG, "report_after_terminal",
                      job_id=job.id[:8], status=job.status.value, reported=report.raw)
            return {}

        updates: Dict[str, Any] = {}
        target = report.status
        if target is None:
            log_event(logger, logging.WARNING, "unrecognized_status",
                      job_id=job.id[:8], raw=repr(report.raw))
        elif target != job.status:
            try:
                updates = self.transition(
                    job, target, backend_reported=True, error_detail=report.error_detail
                )
            except InvalidTransition as e:
                log_event(logger, logging.WARNING, "invalid_transition",
                          job_id=job.id[:8], detail=str(e))

        if updates.get("status") not in TERMINAL_STATUSES:
            updates.update(self.progress_update(job, report.progress))
        if report.slurm_job_id and report.slurm_job_id != job.slurm_job_id:
            updates["slurm_job_id"] = report.slurm_job_id
        return updates
