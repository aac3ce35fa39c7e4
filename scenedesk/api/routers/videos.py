from pathlib import Path

import structlog
from fastapi import APIRouter, HTTPException, Query, status

from scenedesk.api.dependencies import Broadcaster, Orchestrator, Processor, Storage, Store
from scenedesk.models import JobType, VideoStatus
from scenedesk.schemas import (
    EventType,
    JobResponse,
    ProcessUploadRequest,
    ProcessUploadResponse,
    SceneResponse,
    UploadUrlResponse,
    VideoResponse,
)

logger = structlog.get_logger()
router = APIRouter(prefix="/videos", tags=["Videos"])

SUPPORTED_FORMATS = {"mp4", "avi", "mov", "mkv"}
DEFAULT_FORMAT = "mp4"


def _video_format(filename: str) -> str:
    ext = Path(filename).suffix.lstrip(".").lower()
    return ext if ext in SUPPORTED_FORMATS else DEFAULT_FORMAT


@router.get("", response_model=list[VideoResponse], summary="List videos, newest first")
async def list_videos(
    store: Store,
    status_filter: VideoStatus | None = Query(None, alias="status"),
    search: str | None = Query(None, max_length=200),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    return store.get_videos(status=status_filter, search=search, limit=limit, offset=offset)


@router.get("/{video_id}", response_model=VideoResponse, summary="Get a video")
async def get_video(video_id: str, store: Store):
    video = store.get_video(video_id)
    if video is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video not found")
    return video


@router.get("/{video_id}/scenes", response_model=list[SceneResponse], summary="Scenes detected in a video")
async def get_video_scenes(video_id: str, store: Store):
    if store.get_video(video_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video not found")
    return store.get_scenes_by_video(video_id)


@router.post(
    "/upload-url",
    response_model=UploadUrlResponse,
    summary="Presigned upload URL",
    description="""
Returns a presigned PUT URL. The client uploads the file body straight to
object storage, then calls `POST /videos/process-upload` with the same URL.
    """,
)
async def get_upload_url(storage: Storage):
    return UploadUrlResponse(upload_url=storage.generate_upload_url())


@router.post(
    "/process-upload",
    response_model=ProcessUploadResponse,
    summary="Register an uploaded video",
    description="""
Registers a video uploaded through a presigned URL and queues a
`scene_detection` job for it.

**Formats:** `mp4`, `avi`, `mov`, `mkv` (anything else is recorded as `mp4`)

A `video_uploaded` event carrying the new video and job is broadcast.
    """,
)
async def process_upload(
    payload: ProcessUploadRequest,
    store: Store,
    storage: Storage,
    orchestrator: Orchestrator,
    broadcaster: Broadcaster,
    processor: Processor,
):
    object_path = storage.object_path_from_upload_url(payload.upload_url)
    metadata = processor.get_video_metadata(object_path)

    video = store.create_video(
        filename=object_path,
        original_name=payload.filename,
        file_size=payload.file_size,
        format=_video_format(payload.filename),
        status=VideoStatus.UPLOADED,
        duration=metadata["duration"],
        resolution=metadata["resolution"],
        fps=metadata["fps"],
    )

    try:
        job = await orchestrator.submit(
            video.id,
            JobType.SCENE_DETECTION,
            {"filename": object_path, "original_name": payload.filename},
        )
    except Exception as e:
        logger.error("upload_registration_failed", video_id=video.id, error=str(e))
        store.delete_video(video.id)
        raise

    response = ProcessUploadResponse(
        video=VideoResponse.model_validate(video), job=JobResponse.model_validate(job)
    )
    broadcaster.emit(EventType.VIDEO_UPLOADED, response.model_dump(mode="json"))

    logger.info("upload_processed", video_id=video.id, job_id=job.id, object_path=object_path)
    return response
