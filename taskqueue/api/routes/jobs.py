"""
Job submission routes.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from taskqueue.api.auth import CurrentUser
from taskqueue.api.dependencies import Services
from taskqueue.api.rate_limit import enforce_enqueue_rate_limit
from taskqueue.constants import API_V1_PREFIX
from taskqueue.observability.metrics import get_metrics
from taskqueue.types.api import (
    EnqueueJobRequest,
    EnqueueJobResponse,
    JobResponse,
    UserJobsResponse,
    UserJobStats,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/jobs", tags=["Jobs"])


@router.post(
    "",
    response_model=EnqueueJobResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Enqueue a job",
    description="Queue a job for the authenticated user. Limited per user per minute.",
    dependencies=[Depends(enforce_enqueue_rate_limit)],
)
async def enqueue_job(
    request: EnqueueJobRequest,
    current_user: CurrentUser,
    services: Services,
) -> EnqueueJobResponse:
    """
    Enqueue a job owned by the caller.

    Args:
        request: Job type, payload and scheduling options.
        current_user: Authenticated user context.
        services: Shared orchestrators.

    Returns:
        EnqueueJobResponse with the new job id.
    """
    job_id = await services.job_queue.enqueue(
        request.type,
        request.payload,
        user_id=current_user.user_id,
        priority=request.priority,
        scheduled_for=request.scheduled_for,
    )

    get_metrics().record_api_request("enqueue", status.HTTP_201_CREATED)

    return EnqueueJobResponse(
        job_id=job_id,
        message=f"Job {request.type} queued successfully",
    )


@router.get(
    "",
    response_model=UserJobsResponse,
    summary="List my jobs",
    description="Recent jobs of the authenticated user plus queue counts.",
)
async def list_jobs(
    current_user: CurrentUser,
    services: Services,
    limit: int = Query(default=20, ge=1, le=100),
) -> UserJobsResponse:
    queue = services.job_queue
    jobs = await queue.get_user_jobs(current_user.user_id, limit)

    return UserJobsResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        stats=UserJobStats(
            pending=await queue.get_pending_jobs_count(),
            processing=await queue.get_processing_jobs_count(),
            user_jobs=len(jobs),
        ),
    )


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    summary="Get job details",
    description="Get detailed information about one of the caller's jobs.",
)
async def get_job(
    job_id: UUID,
    current_user: CurrentUser,
    services: Services,
) -> JobResponse:
    """
    Get job details by ID.

    Raises:
        HTTPException: 404 if the job does not exist, 403 if the caller
            does not own it.
    """
    job = await services.job_queue.get_job(job_id)

    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )

    if job.user_id != current_user.user_id and not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied",
        )

    return JobResponse.model_validate(job)
