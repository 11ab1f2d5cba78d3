"""
Job data models for the fine-tuning orchestrator.

This module defines:
- JobStatus: Enum for job lifecycle states
- Job: Main job dataclass with serialization
- MetricPoint / LogLine: Append-only observations tied to a job
- JobSpec: Submission input
- NormalizedStatus / Page: Normalized results from the HPC backend
- ChangeEvent: A normalized upstream change consumed by the event relay
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional, List, Generic, TypeVar
import json
import uuid


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp (or pass a datetime through); None on failure."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _decode(data: Dict[Any, Any]) -> Dict[str, Any]:
    """Decode bytes keys/values from Redis."""
    return {
        (k.decode() if isinstance(k, bytes) else k): (v.decode() if isinstance(v, bytes) else v)
        for k, v in data.items()
    }


class JobStatus(str, Enum):
    """Job lifecycle states."""
    QUEUED = "queued"                # Recorded locally, waiting for the backend
    PREPROCESSING = "preprocessing"  # Backend is preparing the corpus
    TRAINING = "training"
    VALIDATING = "validating"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETE, JobStatus.FAILED, JobStatus.CANCELLED})

# Canonical forward sequence
FORWARD_SEQUENCE = (
    JobStatus.QUEUED,
    JobStatus.PREPROCESSING,
    JobStatus.TRAINING,
    JobStatus.VALIDATING,
    JobStatus.COMPLETE,
)


class InfraStatus(str, Enum):
    """Why a queued job has not reached the backend yet."""
    # Submission started but its outcome is not recorded yet
    PENDING = "pending"
    UNREACHABLE = "unreachable"
    NOT_CONFIGURED = "not_configured"


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @classmethod
    def parse(cls, value: Any) -> "LogLevel":
        """Map backend level strings (INFO, warning, ERR, ...) onto LogLevel."""
        text = str(value or "").strip().lower()
        if text.startswith("warn"):
            return cls.WARN
        if text.startswith("err") or text in ("critical", "fatal"):
            return cls.ERROR
        return cls.INFO


@dataclass
class Job:
    """
    Fine-tuning job record.

    Attributes:
        id: Unique job identifier (UUID)
        owner: Principal that owns the job
        base_model: Pretrained model identifier (immutable)
        name: Human-readable job name
        corpus_ref: Optional reference to an external document set (immutable)
        config: Validated training hyperparameters (fixed at submission)
        status: Current job status
        progress: Integer percentage 0-100
        remote_job_id: Id assigned by the HPC backend once accepted
        slurm_job_id: Scheduler-level id reported by the backend, if any
        error_detail: Failure reason (only when status == failed)
        infra_status: Set while a queued job is waiting on infrastructure
        revision: Incremented by the store on every committed write
        created_at: Job creation timestamp
        started_at: First transition out of queued
        completed_at: Entry into a terminal state
        updated_at: Last committed write
    """
    owner: str
    base_model: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    corpus_ref: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.QUEUED
    progress: int = 0
    remote_job_id: Optional[str] = None
    slurm_job_id: Optional[str] = None
    error_detail: Optional[str] = None
    infra_status: Optional[InfraStatus] = None
    revision: int = 0
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if self.created_at is None:
            self.created_at = utcnow()
        if not self.name:
            self.name = f"{self.base_model}-{self.id[:8]}"
        if isinstance(self.status, str):
            self.status = JobStatus(self.status)
        if isinstance(self.infra_status, str):
            self.infra_status = InfraStatus(self.infra_status)

    @property
    def is_terminal(self) -> bool:
        """Check if job is in a terminal state (won't change)."""
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        """Non-terminal job that the backend has accepted."""
        return not self.is_terminal and self.remote_job_id is not None

    @property
    def awaiting_infrastructure(self) -> bool:
        """Queued job whose submission has not been accepted by the backend yet."""
        return (
            self.status == JobStatus.QUEUED
            and self.remote_job_id is None
            and self.infra_status is not None
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON-compatible representation (API responses, relay events)."""
        return {
            "id": self.id,
            "owner": self.owner,
            "name": self.name,
            "base_model": self.base_model,
            "corpus_ref": self.corpus_ref,
            "config": dict(self.config),
            "status": self.status.value,
            "progress": self.progress,
            "remote_job_id": self.remote_job_id,
            "slurm_job_id": self.slurm_job_id,
            "error_detail": self.error_detail,
            "infra_status": self.infra_status.value if self.infra_status else None,
            "revision": self.revision,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "updated_at": _iso(self.updated_at),
        }

    def to_redis_hash(self) -> Dict[str, str]:
        """Flatten to string values for Redis HSET."""
        data = self.to_dict()
        return {
            k: json.dumps(v) if k == "config" else ("" if v is None else str(v))
            for k, v in data.items()
        }

    @classmethod
    def from_dict(cls, data: Dict[Any, Any]) -> "Job":
        """
        Create Job from a dictionary (Redis hash or JSON).

        Handles bytes from Redis, JSON-encoded config and ISO datetimes.
        """
        if data and isinstance(next(iter(data.values())), bytes):
            data = _decode(data)

        config = data.get("config") or {}
        if isinstance(config, str):
            config = json.loads(config) if config else {}

        def opt(key: str) -> Optional[str]:
            value = data.get(key)
            return value if value not in (None, "") else None

        return cls(
            id=data["id"],
            owner=data.get("owner", ""),
            name=data.get("name", ""),
            base_model=data.get("base_model", ""),
            corpus_ref=opt("corpus_ref"),
            config=config,
            status=JobStatus(data.get("status") or JobStatus.QUEUED.value),
            progress=int(data.get("progress") or 0),
            remote_job_id=opt("remote_job_id"),
            slurm_job_id=opt("slurm_job_id"),
            error_detail=opt("error_detail"),
            infra_status=opt("infra_status"),
            revision=int(data.get("revision") or 0),
            created_at=parse_datetime(data.get("created_at")),
            started_at=parse_datetime(data.get("started_at")),
            completed_at=parse_datetime(data.get("completed_at")),
            updated_at=parse_datetime(data.get("updated_at")),
        )

    def __repr__(self) -> str:
        return f"Job(id={self.id[:8]}..., status={self.status.value}, progress={self.progress})"


@dataclass(frozen=True)
class MetricPoint:
    """One training observation. Ordering key is step."""
    job_id: str
    step: int
    train_loss: Optional[float] = None
    val_loss: Optional[float] = None
    learning_rate: Optional[float] = None
    perplexity: Optional[float] = None
    created_at: Optional[datetime] = None

    VALUE_FIELDS = ("train_loss", "val_loss", "learning_rate", "perplexity")

    @property
    def key(self) -> int:
        return self.step

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "step": self.step,
            "train_loss": self.train_loss,
            "val_loss": self.val_loss,
            "learning_rate": self.learning_rate,
            "perplexity": self.perplexity,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], job_id: Optional[str] = None) -> "MetricPoint":
        """
        Build from a stored row or a backend payload.

        Backend payloads may use camelCase names (trainLoss, lr, ...).
        Raises ValueError when the step is missing or negative.
        """
        aliases = {
            "train_loss": ("train_loss", "trainLoss", "loss"),
            "val_loss": ("val_loss", "valLoss", "eval_loss"),
            "learning_rate": ("learning_rate", "learningRate", "lr"),
            "perplexity": ("perplexity", "ppl"),
        }
        values = {}
        for name, keys in aliases.items():
            for key in keys:
                if data.get(key) is not None:
                    values[name] = float(data[key])
                    break

        if data.get("step") is None:
            raise ValueError(f"Metric point without step: {data}")
        step = int(data["step"])
        if step < 0:
            raise ValueError(f"Metric step must be non-negative, got {step}")

        return cls(
            job_id=job_id or data["job_id"],
            step=step,
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            **values,
        )


@dataclass(frozen=True)
class LogLine:
    """One log observation. Ordering key is sequence."""
    job_id: str
    sequence: int
    message: str
    level: LogLevel = LogLevel.INFO
    timestamp: Optional[datetime] = None

    @property
    def key(self) -> int:
        return self.sequence

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "sequence": self.sequence,
            "level": self.level.value,
            "message": self.message,
            "timestamp": _iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], job_id: Optional[str] = None,
                  sequence: Optional[int] = None) -> "LogLine":
        """Build from a stored row or a backend payload (sequence may be assigned)."""
        seq = data.get("sequence", data.get("seq", sequence))
        if seq is None:
            raise ValueError(f"Log line without sequence: {data}")
        return cls(
            job_id=job_id or data["job_id"],
            sequence=int(seq),
            message=str(data.get("message", data.get("line", ""))),
            level=LogLevel.parse(data.get("level")),
            timestamp=parse_datetime(data.get("timestamp") or data.get("created_at")) or utcnow(),
        )


@dataclass
class JobSpec:
    """
    Job submission input.

    Example:
        >>> spec = JobSpec(
        ...     owner="user-1",
        ...     base_model="mistral-7b",
        ...     config={"learning_rate": 2e-4, "epochs": 3},
        ...     corpus_ref="corpus-42",
        ... )
    """
    owner: str
    base_model: str
    config: Dict[str, Any] = field(default_factory=dict)
    corpus_ref: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class NormalizedStatus:
    """
    Backend status report after normalization.

    status is None when the backend string was not recognized.
    """
    raw: str
    status: Optional[JobStatus] = None
    progress: Optional[int] = None
    error_detail: Optional[str] = None
    slurm_job_id: Optional[str] = None


T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    """A finite batch of logs/metrics plus the cursor to resume from."""
    items: List[T] = field(default_factory=list)
    cursor: Optional[str] = None


class ChangeKind(str, Enum):
    JOB = "job"
    METRIC = "metric"
    LOG = "log"


@dataclass(frozen=True)
class ChangeEvent:
    """
    A normalized upstream change.

    key is the per-kind ordering key: job revision, metric step or log
    sequence. payload is the JSON-compatible row.
    """
    kind: ChangeKind
    job_id: str
    key: int
    payload: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "job_id": self.job_id,
            "key": self.key,
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeEvent":
        return cls(
            kind=ChangeKind(data["kind"]),
            job_id=data["job_id"],
            key=int(data["key"]),
            payload=data.get("payload") or {},
        )

    @classmethod
    def for_job(cls, job: Job) -> "ChangeEvent":
        return cls(ChangeKind.JOB, job.id, job.revision, job.to_dict())

    @classmethod
    def for_metric(cls, point: MetricPoint) -> "ChangeEvent":
        return cls(ChangeKind.METRIC, point.job_id, point.step, point.to_dict())

    @classmethod
    def for_log(cls, line: LogLine) -> "ChangeEvent":
        return cls(ChangeKind.LOG, line.job_id, line.sequence, line.to_dict())
