import structlog
from fastapi import APIRouter, HTTPException, Query, status

from scenedesk.api.dependencies import Orchestrator, Store, get_job_or_404
from scenedesk.core.errors import (
    InvalidJobStateError,
    JobNotFoundError,
    UnknownJobTypeError,
    VideoNotFoundError,
)
from scenedesk.models import JobStatus, JobType
from scenedesk.schemas import (
    JobCreate,
    JobDetailResponse,
    JobEventResponse,
    JobProgressUpdate,
    JobResponse,
)

logger = structlog.get_logger()
router = APIRouter(prefix="/jobs", tags=["Jobs"])


@router.post(
    "",
    response_model=JobResponse,
    summary="Submit a job",
    description="""
Creates a job in `queued` state and schedules it for a worker.

The call returns as soon as the job is queued; follow its progress on the
live-update channel or by polling `GET /jobs/{id}`.
    """,
)
async def submit_job(payload: JobCreate, orchestrator: Orchestrator):
    try:
        return await orchestrator.submit(payload.video_id, payload.type, payload.data)
    except (UnknownJobTypeError, VideoNotFoundError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("", response_model=list[JobDetailResponse], summary="List jobs, newest first")
async def list_jobs(
    store: Store,
    status_filter: JobStatus | None = Query(None, alias="status"),
    type: JobType | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    return store.get_jobs(status=status_filter, type=type, limit=limit, offset=offset)


@router.get("/{job_id}", response_model=JobDetailResponse, summary="Get a job with its video")
async def get_job(job_id: str, store: Store):
    return get_job_or_404(job_id, store)


@router.get("/{job_id}/events", response_model=list[JobEventResponse], summary="Job audit trail")
async def get_job_events(job_id: str, store: Store):
    get_job_or_404(job_id, store)
    return store.get_job_events(job_id)


@router.post(
    "/{job_id}/cancel",
    response_model=JobResponse,
    summary="Cancel a job",
    description="""
Cancels a `queued` or `processing` job.

A running worker stops at its next checkpoint and its result is discarded.
Unknown ids and jobs that already settled answer 404.
    """,
)
async def cancel_job(job_id: str, orchestrator: Orchestrator):
    try:
        return await orchestrator.cancel(job_id)
    except (JobNotFoundError, InvalidJobStateError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/{job_id}/retry", response_model=JobResponse, summary="Retry a failed job")
async def retry_job(job_id: str, orchestrator: Orchestrator):
    try:
        return await orchestrator.retry(job_id)
    except (JobNotFoundError, InvalidJobStateError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post(
    "/{job_id}/progress",
    response_model=JobResponse,
    summary="Worker progress callback",
    description="""
Applies a progress and/or status update reported by an external worker.

Progress is clamped to 0-100 and ignored unless the job is `processing`.
Status changes must follow the job state machine; illegal ones answer 409.
    """,
)
async def update_job_progress(job_id: str, payload: JobProgressUpdate, orchestrator: Orchestrator):
    try:
        return await orchestrator.apply_update(
            job_id, progress=payload.progress, status=payload.status, error=payload.error
        )
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidJobStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
