from .events import EventType, LiveEvent
from .job import (
    JobCreate,
    JobDetailResponse,
    JobEventResponse,
    JobProgressUpdate,
    JobResponse,
    ProcessUploadResponse,
    WorkerInfo,
    WorkerStatsResponse,
    serialize_job,
)
from .video import ProcessUploadRequest, SceneResponse, UploadUrlResponse, VideoResponse, VideoSummary

__all__ = [
    "EventType", "LiveEvent",
    "JobCreate", "JobDetailResponse", "JobEventResponse", "JobProgressUpdate", "JobResponse", "ProcessUploadResponse",
    "WorkerInfo", "WorkerStatsResponse", "serialize_job",
    "ProcessUploadRequest", "SceneResponse", "UploadUrlResponse", "VideoResponse", "VideoSummary",
]
