"""
REST endpoints for job management.

Provides:
- POST /api/jobs - Submit new job
- GET /api/jobs - List jobs
- GET /api/jobs/{id} - Get job details
- DELETE /api/jobs/{id} - Cancel job
- GET /api/jobs/{id}/metrics - Get training metrics
- GET /api/jobs/{id}/logs - Get job logs
- GET /api/reconciler/status - Get reconciler status

Handlers are plain functions: the manager blocks on the store and the HPC
backend, so FastAPI runs them in its thread pool.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.schemas import (
    JobCreate,
    JobResponse,
    JobListResponse,
    LogLineSchema,
    MetricPointSchema,
    ReconcilerStatusResponse,
    success_response,
)
from tuning_engine.jobs import Job, JobManager, JobSpec, JobStatus, ValidationError
from tuning_engine.jobs.errors import JobAccessDenied, JobNotFound

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


def get_manager(request: Request) -> JobManager:
    """Dependency to get the JobManager built at startup."""
    return request.app.state.manager


def job_to_response(job: Job) -> JobResponse:
    """Convert Job model to JobResponse schema."""
    return JobResponse(**job.to_dict())


def _job_payload(job: Job) -> dict:
    return {"jobs": [job_to_response(job).model_dump(mode='json')]}


@router.post("", status_code=201)
def submit_job(
    request: JobCreate,
    manager: JobManager = Depends(get_manager)
):
    """
    Submit a new fine-tuning job.

    The job is recorded as queued and handed to the HPC backend. A backend
    that is unreachable or not configured leaves the job queued with
    infra_status set; the reconciler retries the submission.

    Example:
        POST /api/jobs
        {
            "owner": "user-1",
            "base_model": "mistral-7b",
            "config": {"learning_rate": 0.0002, "epochs": 3}
        }
    """
    spec = JobSpec(
        owner=request.owner,
        base_model=request.base_model,
        config=request.config,
        corpus_ref=request.corpus_ref,
        name=request.name,
    )
    job_id = manager.submit_job(spec)
    job = manager.get_job(job_id)
    logger.info("Submitted job %s via API (status=%s)", job_id[:8], job.status.value)
    return JSONResponse(
        status_code=201,
        content=success_response(data=_job_payload(job), code=201)
    )


@router.get("")
def list_jobs(
    owner: Optional[str] = Query(None, description="Filter by owner"),
    status: Optional[str] = Query(None, description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum jobs to return"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
    manager: JobManager = Depends(get_manager)
):
    """
    List jobs with optional filtering, newest first.

    Example:
        GET /api/jobs?owner=user-1&status=training&limit=10
    """
    jobs = manager.list_jobs(owner=owner, status=status, limit=limit, offset=offset)
    total = manager.store.count_jobs(
        owner=owner, status=JobStatus(status) if status else None
    )

    response_data = JobListResponse(
        jobs=[job_to_response(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
    )
    return JSONResponse(
        status_code=200,
        content=success_response(data=response_data.model_dump(mode='json'))
    )


@router.get("/{job_id}")
def get_job(
    job_id: str,
    owner: Optional[str] = Query(None, description="Require this owner"),
    manager: JobManager = Depends(get_manager)
):
    """
    Get job details by ID.

    Example:
        GET /api/jobs/a1b2c3d4-...
    """
    job = manager.get_job(job_id, owner=owner)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return JSONResponse(status_code=200, content=success_response(data=_job_payload(job)))


@router.delete("/{job_id}", status_code=200)
def cancel_job(
    job_id: str,
    owner: Optional[str] = Query(None, description="Require this owner"),
    manager: JobManager = Depends(get_manager)
):
    """
    Cancel a job.

    - Asks the backend to cancel when the job was accepted there
    - Marks the job cancelled even if the backend cannot be reached
    - If already terminal: Returns 400

    Example:
        DELETE /api/jobs/a1b2c3d4-...
    """
    try:
        job = manager.cancel_job(job_id, owner=owner)
    except (JobNotFound, JobAccessDenied):
        raise
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    return JSONResponse(status_code=200, content=success_response(data=_job_payload(job)))


@router.get("/{job_id}/metrics")
def get_job_metrics(
    job_id: str,
    after_step: Optional[int] = Query(None, ge=0, description="Only metrics after this step"),
    owner: Optional[str] = Query(None, description="Require this owner"),
    manager: JobManager = Depends(get_manager)
):
    """
    Get training metrics, ascending by step.

    Example:
        GET /api/jobs/a1b2c3d4-.../metrics?after_step=100
    """
    points = manager.get_metrics(job_id, owner=owner, after_step=after_step)
    return JSONResponse(
        status_code=200,
        content=success_response(data={
            "job_id": job_id,
            "metrics": [MetricPointSchema(**p.to_dict()).model_dump(mode='json') for p in points],
        })
    )


@router.get("/{job_id}/logs")
def get_job_logs(
    job_id: str,
    after_sequence: Optional[int] = Query(None, ge=0, description="Only lines after this sequence"),
    owner: Optional[str] = Query(None, description="Require this owner"),
    manager: JobManager = Depends(get_manager)
):
    """
    Get job log lines, ascending by sequence.

    Example:
        GET /api/jobs/a1b2c3d4-.../logs
    """
    lines = manager.get_logs(job_id, owner=owner, after_sequence=after_sequence)
    return JSONResponse(
        status_code=200,
        content=success_response(data={
            "job_id": job_id,
            "logs": [LogLineSchema(**l.to_dict()).model_dump(mode='json') for l in lines],
        })
    )


# Reconciler status endpoint (separate router for clarity)
reconciler_router = APIRouter(prefix="/api/reconciler", tags=["reconciler"])


@reconciler_router.get("/status")
def get_reconciler_status(
    request: Request,
    manager: JobManager = Depends(get_manager)
):
    """
    Get reconciler loop statistics, live subscriber counts and job counts.

    Example:
        GET /api/reconciler/status
    """
    response_data = ReconcilerStatusResponse(
        reconciler=request.app.state.reconciler.stats(),
        relay=request.app.state.relay.stats(),
        backend_configured=manager.client.configured,
        job_counts=manager.get_job_counts(),
    )
    return JSONResponse(
        status_code=200,
        content=success_response(data=response_data.model_dump(mode='json'))
    )
