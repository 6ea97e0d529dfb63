"""
Job Routes: create estimation jobs and poll their status.
"""
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from jobmaster.api.deps import get_services
from jobmaster.core.limiter import limiter, JOB_CREATE_LIMIT, STATUS_LIMIT
from jobmaster.schemas import JobCreateRequest, JobCreatedResponse, JobView
from jobmaster.services.job_service import JobServices
from jobmaster.services.job_store import JobStatus

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/job", response_model=JobCreatedResponse, status_code=201)
@limiter.limit(JOB_CREATE_LIMIT)
async def create_job(
    request: Request,
    body: JobCreateRequest,
    background_tasks: BackgroundTasks,
    services: JobServices = Depends(get_services),
):
    """
    Persist and queue a new job. Returns the jobId immediately.
    """
    job_id = await services.submission.submit(body.type, body.data)

    # In-process queue: let the response go out, then process
    if services.drain is not None:
        background_tasks.add_task(services.drain)

    return JobCreatedResponse(job_id=job_id, status=JobStatus.PENDING.value)


@router.get("/job/{job_id}", response_model=JobView, response_model_exclude_none=True)
@limiter.limit(STATUS_LIMIT)
async def get_job(request: Request, job_id: str, services: JobServices = Depends(get_services)):
    """
    Current state of a job, straight from the store.
    """
    job = await services.query.get_status(job_id)
    return JobView(**job.to_view())
