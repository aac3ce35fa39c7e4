from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from scenedesk.jobs.broadcast import EventBroadcaster
from scenedesk.jobs.orchestrator import JobOrchestrator
from scenedesk.models import Job
from scenedesk.services import RecordStore, StorageService, VideoProcessor


def get_store(request: Request) -> RecordStore:
    return request.app.state.store


def get_orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.orchestrator


def get_broadcaster(request: Request) -> EventBroadcaster:
    return request.app.state.broadcaster


def get_storage(request: Request) -> StorageService:
    return request.app.state.storage


def get_processor(request: Request) -> VideoProcessor:
    return request.app.state.processor


Store = Annotated[RecordStore, Depends(get_store)]
Orchestrator = Annotated[JobOrchestrator, Depends(get_orchestrator)]
Broadcaster = Annotated[EventBroadcaster, Depends(get_broadcaster)]
Storage = Annotated[StorageService, Depends(get_storage)]
Processor = Annotated[VideoProcessor, Depends(get_processor)]


def get_job_or_404(job_id: str, store: Store) -> Job:
    job = store.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job
