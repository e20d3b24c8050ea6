"""
Job management API endpoints.

Thin HTTP layer over ``JobService``: request validation, error mapping and
response shaping. Every route requires the ``X-API-Key`` header.
"""

from typing import Optional
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
import logging

from ..errors import (
    AlreadyRunningError, InvalidExpressionError, InvalidJobError, JobNotFoundError,
    NoUpcomingOccurrenceError, SchedulerError, UnknownJobTypeError,
)
from ..schemas import (
    JobCreate, JobUpdate, JobResponse, JobLogResponse, JobListResponse,
    JobLogListResponse, RunAcceptedResponse, SchedulerStatusResponse,
)
from ..service import JobService

logger = logging.getLogger(__name__)


def verify_api_key(request: Request, x_api_key: Optional[str] = Header(None)) -> None:
    """Reject requests without the configured API key."""
    if not x_api_key or x_api_key != request.app.state.settings.api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key"
        )


router = APIRouter(dependencies=[Depends(verify_api_key)])


def get_job_service(request: Request) -> JobService:
    """Dependency to get the job service of the running engine."""
    return request.app.state.runtime.service


def to_http_error(error: SchedulerError) -> HTTPException:
    """Map engine errors onto HTTP status codes."""
    if isinstance(error, JobNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, AlreadyRunningError):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, (InvalidExpressionError, NoUpcomingOccurrenceError, UnknownJobTypeError, InvalidJobError)):
        return HTTPException(status_code=400, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


@router.post("/jobs", response_model=JobResponse, status_code=status.HTTP_201_CREATED)
def create_job(
    job_data: JobCreate,
    service: JobService = Depends(get_job_service)
) -> JobResponse:
    """
    Create a new job.

    Active jobs with a schedule expression are armed immediately.
    """
    try:
        job = service.create_job(
            name=job_data.name,
            job_type=job_data.type,
            owner_id=job_data.owner_id,
            schedule_expr=job_data.schedule_expr,
            config=job_data.config,
            is_active=job_data.is_active,
        )
        return JobResponse.from_orm(job)
    except SchedulerError as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"Error creating job: {str(e)}")
        raise HTTPException(
            status_code=500,
            detail="Internal server error while creating job"
        )


@router.get("/jobs", response_model=JobListResponse)
def list_jobs(
    page: int = Query(1, ge=1, description="Page number"),
    size: int = Query(10, ge=1, le=100, description="Page size"),
    status: Optional[str] = Query(None, description="Filter by job status"),
    owner_id: Optional[str] = Query(None, description="Filter by owner ID"),
    type: Optional[str] = Query(None, description="Filter by job type"),
    is_active: Optional[bool] = Query(None, description="Filter by active flag"),
    service: JobService = Depends(get_job_service)
) -> JobListResponse:
    """
    List all jobs.

    Returns a paginated list of jobs with optional filtering.
    """
    try:
        jobs, total = service.list_jobs(page, size, status=status, owner_id=owner_id, job_type=type, is_active=is_active)
        return JobListResponse(
            jobs=[JobResponse.from_orm(job) for job in jobs],
            total=total,
            page=page,
            size=size
        )
    except Exception as e:
        logger.error(f"Error listing jobs: {str(e)}")
        raise HTTPException(
            status_code=500,
            detail="Internal server error while listing jobs"
        )


@router.get("/jobs/{job_id}", response_model=JobResponse)
def get_job(
    job_id: int,
    service: JobService = Depends(get_job_service)
) -> JobResponse:
    """Get job details, including last and next run."""
    try:
        return JobResponse.from_orm(service.get_job(job_id))
    except SchedulerError as e:
        raise to_http_error(e)


@router.put("/jobs/{job_id}", response_model=JobResponse)
def update_job(
    job_id: int,
    update_data: JobUpdate,
    service: JobService = Depends(get_job_service)
) -> JobResponse:
    """
    Update a job.

    Only the fields present in the body change. Sending ``schedule_expr: null``
    turns the job into an on-demand job.
    """
    try:
        job = service.update_job(job_id, update_data.model_dump(exclude_unset=True))
        return JobResponse.from_orm(job)
    except SchedulerError as e:
        raise to_http_error(e)
    except Exception as e:
        logger.error(f"Error updating job {job_id}: {str(e)}")
        raise HTTPException(
            status_code=500,
            detail="Internal server error while updating job"
        )


@router.delete("/jobs/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_job(
    job_id: int,
    service: JobService = Depends(get_job_service)
) -> None:
    """
    Delete a job.

    The timer is disarmed first; the execution log is kept.
    """
    try:
        service.delete_job(job_id)
    except SchedulerError as e:
        raise to_http_error(e)


@router.get("/jobs/{job_id}/logs", response_model=JobLogListResponse)
def get_job_logs(
    job_id: int,
    page: int = Query(1, ge=1, description="Page number"),
    size: int = Query(50, ge=1, le=500, description="Page size"),
    service: JobService = Depends(get_job_service)
) -> JobLogListResponse:
    """Execution history of a job, oldest first."""
    logs, total = service.get_job_logs(job_id, page, size)
    return JobLogListResponse(
        logs=[JobLogResponse.from_orm(entry) for entry in logs],
        total=total,
        page=page,
        size=size
    )


@router.post("/jobs/{job_id}/run", response_model=RunAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
def run_job(
    job_id: int,
    service: JobService = Depends(get_job_service)
) -> RunAcceptedResponse:
    """
    Run a job immediately.

    Returns 409 while a previous run of the same job is still in flight.
    """
    try:
        execution, _ = service.run_job_now(job_id)
    except SchedulerError as e:
        raise to_http_error(e)

    return RunAcceptedResponse(
        message="Job queued for immediate execution",
        job_id=job_id,
        run_id=execution.run_id
    )


@router.get("/scheduler", response_model=SchedulerStatusResponse)
def scheduler_status(service: JobService = Depends(get_job_service)) -> SchedulerStatusResponse:
    """Armed, firing and in-flight job counts."""
    return SchedulerStatusResponse(**service.scheduler.stats())
