"""
Job administration routes.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from delayed.api.auth import CurrentOperator
from delayed.constants import API_V1_PREFIX
from delayed.db import get_async_session
from delayed.db.repository import JobRepository
from delayed.types.api import (
    JobListResponse,
    JobResponse,
    JobStatsResponse,
    PurgeJobsResponse,
    RetryJobResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/jobs", tags=["Jobs"])


@router.get(
    "",
    response_model=JobListResponse,
    summary="List jobs",
    description="List jobs in queue order with optional filtering.",
)
async def list_jobs(
    operator: CurrentOperator,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    failed: bool | None = Query(default=None),
    locked_by_host: str | None = Query(default=None),
    session: AsyncSession = Depends(get_async_session),
) -> JobListResponse:
    """
    List jobs.

    Args:
        operator: Authenticated operator.
        page: Page number (1-indexed).
        page_size: Number of items per page.
        failed: Only permanently failed (true) or live (false) jobs.
        locked_by_host: Only jobs leased by workers on this host.
        session: Database session.

    Returns:
        JobListResponse with paginated jobs.
    """
    repo = JobRepository(session)
    offset = (page - 1) * page_size

    jobs, total = await repo.list_jobs(
        locked_by_host=locked_by_host,
        failed=failed,
        limit=page_size,
        offset=offset,
    )

    return JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        page=page,
        page_size=page_size,
        has_next=(page * page_size) < total,
    )


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    summary="Get job details",
    description="Get detailed information about a specific job.",
)
async def get_job(
    job_id: int,
    operator: CurrentOperator,
    session: AsyncSession = Depends(get_async_session),
) -> JobResponse:
    """
    Get job details by ID.

    Raises:
        HTTPException: If the job does not exist.
    """
    job = await JobRepository(session).get_job(job_id)

    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )

    return JobResponse.model_validate(job)


@router.post(
    "/{job_id}/retry",
    response_model=RetryJobResponse,
    summary="Retry a failed job",
    description="Put a permanently failed job back in the queue with a fresh attempt budget.",
)
async def retry_job(
    job_id: int,
    operator: CurrentOperator,
    session: AsyncSession = Depends(get_async_session),
) -> RetryJobResponse:
    """
    Retry a permanently failed job.

    Raises:
        HTTPException: If the job does not exist or has not failed.
    """
    repo = JobRepository(session)
    job = await repo.get_job(job_id)

    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )

    if job.failed_at is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Job has not failed",
        )

    updated_job = await repo.retry_failed(job_id)
    await session.commit()

    logger.info(
        "Failed job retried",
        extra={"job_id": job_id, "operator": operator.subject},
    )

    return RetryJobResponse(
        id=updated_job.id,
        attempts=updated_job.attempts,
        run_at=updated_job.run_at,
    )


@router.delete(
    "",
    response_model=PurgeJobsResponse,
    summary="Delete all jobs",
    description="Delete every job in the queue, running or not.",
)
async def purge_jobs(
    operator: CurrentOperator,
    session: AsyncSession = Depends(get_async_session),
) -> PurgeJobsResponse:
    """Delete every job."""
    deleted = await JobRepository(session).delete_all()
    await session.commit()

    logger.warning(
        "Queue purged",
        extra={"deleted": deleted, "operator": operator.subject},
    )
    return PurgeJobsResponse(deleted=deleted)


@router.get(
    "/stats/summary",
    response_model=JobStatsResponse,
    summary="Get job statistics",
    description="Count jobs by state.",
)
async def get_job_stats(
    operator: CurrentOperator,
    session: AsyncSession = Depends(get_async_session),
) -> JobStatsResponse:
    """Get job counts by state."""
    stats = await JobRepository(session).get_job_stats()
    return JobStatsResponse(**stats)
