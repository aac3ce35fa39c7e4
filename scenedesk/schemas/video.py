from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from scenedesk.models.video import VideoStatus


class VideoSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    original_name: str
    filename: str
    format: str
    status: VideoStatus


class VideoResponse(VideoSummary):
    file_size: int
    duration: float | None = None
    resolution: str | None = None
    fps: int | None = None
    created_at: datetime
    updated_at: datetime


class SceneResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    video_id: str
    job_id: str
    start_time: float
    end_time: float
    confidence: float
    thumbnail_url: str | None = None
    metadata: dict | None = Field(default=None, validation_alias="scene_metadata")
    created_at: datetime


class UploadUrlResponse(BaseModel):
    upload_url: str


class ProcessUploadRequest(BaseModel):
    upload_url: str = Field(..., min_length=1)
    filename: str = Field(..., min_length=1)
    file_size: int = Field(..., gt=0)
