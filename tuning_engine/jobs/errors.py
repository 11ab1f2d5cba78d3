"""
Error taxonomy for job orchestration.

Only ValidationError (and its subclasses) crosses the JobManager's public
boundary. Everything else is handled inside the orchestrator/reconciler,
logged as a structured event and, where relevant, reflected on the job row.
"""

from typing import Optional


class OrchestratorError(Exception):
    """Base class for all orchestration errors."""
    pass


class ValidationError(OrchestratorError):
    """Bad submission spec or command; rejected before any remote call."""

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or [message]


class JobNotFound(ValidationError):
    """The referenced job does not exist."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class JobAccessDenied(ValidationError):
    """The caller does not own the job."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} is not owned by caller")
        self.job_id = job_id


# =============================================================================
# Remote compute errors
# =============================================================================

class RemoteError(OrchestratorError):
    """Base class for remote compute backend errors."""
    retryable = False


class RemoteUnreachable(RemoteError):
    """Transient network/timeout failure. Never terminal by itself."""
    retryable = True


class RemoteNotConfigured(RemoteError):
    """The remote endpoint is not configured (infrastructure absent)."""
    pass


class RemoteNotFound(RemoteError):
    """The backend does not know the remote job id."""
    pass


class RemoteRejected(RemoteError):
    """The backend refused the job. Terminal for the job."""

    def __init__(self, reason: str, status_code: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


# =============================================================================
# State and persistence errors
# =============================================================================

class InvalidTransition(OrchestratorError):
    """A status change that the job state machine does not allow."""

    def __init__(self, current, target, reason: str = ""):
        cur = getattr(current, "value", current)
        tgt = getattr(target, "value", target)
        msg = f"Invalid transition {cur} -> {tgt}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.current = current
        self.target = target


class StoreWriteFailure(OrchestratorError):
    """The persistence layer failed to commit a write."""
    pass


class ConcurrentModification(StoreWriteFailure):
    """A compare-and-set write found a newer revision than expected."""

    def __init__(self, job_id: str, expected: int, actual: int):
        super().__init__(
            f"Job {job_id} changed concurrently (expected revision {expected}, found {actual})"
        )
        self.job_id = job_id
        self.expected = expected
        self.actual = actual


# =============================================================================
# Relay errors
# =============================================================================

class SubscriberDropped(OrchestratorError):
    """The subscriber fell too far behind and must re-attach."""
    pass
