import enum
from typing import Any

from pydantic import BaseModel


class EventType(str, enum.Enum):
    VIDEO_UPLOADED = "video_uploaded"
    JOB_PROGRESS = "job_progress"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    JOB_CANCELLED = "job_cancelled"
    JOB_RETRIED = "job_retried"


class LiveEvent(BaseModel):
    """Message pushed to every live-update subscriber."""

    type: EventType
    data: dict[str, Any]
