from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from scenedesk.models.job import JobStatus, JobType

from .video import VideoResponse, VideoSummary


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    video_id: str
    type: JobType
    status: JobStatus
    progress: int
    data: dict[str, Any] | None = None
    error: str | None = None
    attempts: int = 0
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class JobDetailResponse(JobResponse):
    video: VideoSummary | None = None


class JobCreate(BaseModel):
    video_id: str = Field(..., min_length=1)
    type: JobType = JobType.SCENE_DETECTION
    data: dict[str, Any] | None = None


class JobProgressUpdate(BaseModel):
    progress: int | None = None
    status: JobStatus | None = None
    error: str | None = None


class WorkerInfo(BaseModel):
    id: str
    status: str
    job_id: str
    progress: int


class WorkerStatsResponse(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int
    workers: list[WorkerInfo]


class ProcessUploadResponse(BaseModel):
    video: VideoResponse
    job: JobResponse


def serialize_job(job) -> dict[str, Any]:
    """JSON-ready job payload used in live-update events."""
    return JobResponse.model_validate(job).model_dump(mode="json")


class JobEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    event_type: str
    old_status: JobStatus | None = None
    new_status: JobStatus | None = None
    event_data: dict[str, Any] | None = None
    created_at: datetime
