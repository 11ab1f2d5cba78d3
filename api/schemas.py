"""
Pydantic schemas for API request/response models.

This module defines:
- ApiResponse: Unified wrapper for all API responses
- JobCreate: Request body for job submission
- JobResponse: Response body for job details
- JobListResponse: Response body for job list
- MetricPointSchema / LogLineSchema: Observations of a job
- ReconcilerStatusResponse: Reconciler and relay status
"""

from datetime import datetime
from typing import Dict, Any, Optional, List, TypeVar, Generic
from pydantic import BaseModel, Field

# Generic type for wrapped data
T = TypeVar('T')


class ApiResponse(BaseModel, Generic[T]):
    """
    Unified API response wrapper.

    All API responses are wrapped in this format for consistency.
    Frontend checks 'status' field to determine success or failure.

    Success example:
        {
            "code": 200,
            "status": "succeed",
            "data": { "id": "abc123", ... }
        }

    Error example:
        {
            "code": 422,
            "status": "failed",
            "error": "Invalid job spec: Unknown base model 'gpt-9'"
        }
    """
    code: int = Field(..., description="HTTP status code")
    status: str = Field(..., description="Business status: 'succeed' or 'failed'")
    data: Optional[T] = Field(default=None, description="Response data (present when succeed)")
    error: Optional[str] = Field(default=None, description="Error message (present when failed)")

    class Config:
        from_attributes = True


def success_response(data: Any = None, code: int = 200) -> dict:
    """
    Helper function to create a success response.

    Args:
        data: Response data (job details, lists, etc.)
        code: HTTP status code (default 200)

    Returns:
        {
            "code": 200,
            "status": "succeed",
            "data": { ... }
        }
    """
    return {
        "code": code,
        "status": "succeed",
        "data": data
    }


def error_response(error: str, code: int = 400, details: Optional[List[str]] = None) -> dict:
    """
    Helper function to create an error response.

    Args:
        error: Error message describing what went wrong
        code: HTTP status code (default 400)
        details: Optional list of individual problems (validation)

    Returns:
        {
            "code": 422,
            "status": "failed",
            "error": "Error message here"
        }
    """
    response = {
        "code": code,
        "status": "failed",
        "error": error
    }
    if details:
        response["details"] = details
    return response


class JobCreate(BaseModel):
    """
    Request body for job submission.

    Example:
        {
            "owner": "user-1",
            "base_model": "mistral-7b",
            "name": "support-bot-v2",
            "corpus_ref": "corpus-42",
            "config": {"learning_rate": 0.0002, "epochs": 3, "chunk_size": 512, "chunk_overlap": 64}
        }
    """
    owner: str = Field(..., min_length=1, description="Principal that owns the job")
    base_model: str = Field(..., description="Pretrained model identifier")
    name: Optional[str] = Field(default=None, description="Human-readable name (generated if omitted)")
    corpus_ref: Optional[str] = Field(default=None, description="Reference to the training document set")
    config: Dict[str, Any] = Field(
        default_factory=dict,
        description="Training hyperparameters (merged over defaults)"
    )


class JobResponse(BaseModel):
    """
    Response body for job details.

    Example:
        {
            "id": "a1b2c3d4-...",
            "status": "training",
            "progress": 40,
            "remote_job_id": "hpc-991",
            "created_at": "2024-01-01T12:00:00Z",
            ...
        }
    """
    id: str = Field(..., description="Job UUID")
    owner: str = Field(..., description="Owner")
    name: str = Field(..., description="Job name")
    base_model: str = Field(..., description="Base model")
    corpus_ref: Optional[str] = Field(default=None, description="Corpus reference")
    config: Dict[str, Any] = Field(default_factory=dict, description="Effective training config")
    status: str = Field(..., description="Job status")
    progress: int = Field(default=0, description="Progress percentage 0-100")
    remote_job_id: Optional[str] = Field(default=None, description="HPC backend job id")
    slurm_job_id: Optional[str] = Field(default=None, description="Scheduler job id")
    error_detail: Optional[str] = Field(default=None, description="Failure reason if failed")
    infra_status: Optional[str] = Field(
        default=None, description="Set while a queued job waits on infrastructure"
    )
    revision: int = Field(default=0, description="Row revision")
    created_at: Optional[datetime] = Field(default=None, description="Creation timestamp")
    started_at: Optional[datetime] = Field(default=None, description="Start timestamp")
    completed_at: Optional[datetime] = Field(default=None, description="Completion timestamp")
    updated_at: Optional[datetime] = Field(default=None, description="Last update timestamp")

    class Config:
        from_attributes = True


class JobListResponse(BaseModel):
    """Response body for job list."""
    jobs: List[JobResponse] = Field(..., description="List of jobs")
    total: int = Field(..., description="Total number of jobs matching filter")
    limit: int = Field(..., description="Pagination limit")
    offset: int = Field(..., description="Pagination offset")


class MetricPointSchema(BaseModel):
    """One training observation."""
    job_id: str
    step: int
    train_loss: Optional[float] = None
    val_loss: Optional[float] = None
    learning_rate: Optional[float] = None
    perplexity: Optional[float] = None
    created_at: Optional[datetime] = None


class LogLineSchema(BaseModel):
    """One log line."""
    job_id: str
    sequence: int
    level: str
    message: str
    timestamp: Optional[datetime] = None


class ReconcilerStatusResponse(BaseModel):
    """Response body for reconciler status."""
    reconciler: Dict[str, Any] = Field(..., description="Reconciler loop statistics")
    relay: Dict[str, int] = Field(..., description="Live subscriber statistics")
    backend_configured: bool = Field(..., description="Whether an HPC endpoint is configured")
    job_counts: Dict[str, int] = Field(..., description="Job counts by status")
