"""Polling endpoints for background pipeline jobs."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query

from insight_engine.api.deps import get_job_store
from insight_engine.core.errors import NotFoundError
from insight_engine.core.schemas_insights import JobStatus, JobType
from insight_engine.db.jobs import JobStore

router = APIRouter()


@router.get("/{job_id}")
def get_job(job_id: UUID, job_store: JobStore = Depends(get_job_store)) -> dict:
    """
    One job row: status, input, output, progress, error and timestamps.

    Clients poll this after a clustering, backfill, discovery or generation
    request returns a job id. Unknown ids are a 404.
    """
    job = job_store.get_job(job_id)
    if not job:
        raise NotFoundError("Job", str(job_id))
    return job


@router.get("/")
def list_jobs(
    job_type: JobType | None = Query(None, description="Only jobs of this pipeline"),
    status: JobStatus | None = Query(None, description="Only jobs in this state"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    job_store: JobStore = Depends(get_job_store),
) -> dict:
    jobs = job_store.list_jobs(job_type=job_type, status=status, limit=limit, offset=offset)
    return {"jobs": jobs, "limit": limit, "offset": offset, "count": len(jobs)}
