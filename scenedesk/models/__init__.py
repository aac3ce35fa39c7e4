from .base import Base, create_db_engine, create_session_factory
from .video import Video, VideoStatus
from .job import ACTIVE_STATUSES, Job, JobEvent, JobStatus, JobType
from .scene import Scene

__all__ = [
    "Base",
    "create_db_engine",
    "create_session_factory",
    "Video",
    "VideoStatus",
    "Job",
    "JobEvent",
    "JobStatus",
    "JobType",
    "ACTIVE_STATUSES",
    "Scene",
]
