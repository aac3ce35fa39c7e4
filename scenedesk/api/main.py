from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from scenedesk.api.routers import (
    health_router,
    jobs_router,
    live_updates,
    metrics_router,
    objects_router,
    public_objects_router,
    videos_router,
)
from scenedesk.core.config import Settings, get_settings
from scenedesk.core.log import configure_logging
from scenedesk.jobs.backends import QueueBackend, create_backend
from scenedesk.jobs.broadcast import EventBroadcaster, SubscriberRegistry
from scenedesk.jobs.orchestrator import JobOrchestrator
from scenedesk.models import create_db_engine, create_session_factory
from scenedesk.services import RecordStore, StorageService, VideoProcessor, default_registry

logger = structlog.get_logger()


def create_app(
    settings: Settings | None = None,
    engine: Engine | None = None,
    backend: QueueBackend | None = None,
    storage: StorageService | None = None,
    processor: VideoProcessor | None = None,
) -> FastAPI:
    """Build the API with its orchestrator, broadcaster and collaborators wired in.

    Every collaborator can be passed in; anything omitted is built from ``settings``.
    """
    settings = settings or get_settings()
    engine = engine or create_db_engine(settings.database_url)
    backend = backend or create_backend(settings)
    storage = storage or StorageService(settings)
    processor = processor or VideoProcessor(step_seconds=settings.processing_step_seconds)

    store = RecordStore(create_session_factory(engine))
    subscribers = SubscriberRegistry()
    broadcaster = EventBroadcaster(subscribers)
    orchestrator = JobOrchestrator(
        store,
        backend,
        broadcaster,
        default_registry(processor),
        worker_concurrency=settings.worker_concurrency,
        job_timeout_seconds=settings.job_timeout_seconds,
        poll_interval=settings.dispatch_poll_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        configure_logging(settings.log_level, json_logs=settings.log_json and not settings.debug)
        storage.ensure_bucket_exists()

        if settings.worker_enabled:
            await orchestrator.recover_interrupted(requeue_waiting=not backend.durable)
            await orchestrator.start()

        logger.info(
            "api_started",
            queue_backend=settings.queue_backend,
            worker_enabled=settings.worker_enabled,
            concurrency=settings.worker_concurrency,
        )
        yield

        await orchestrator.stop()
        await subscribers.close()
        await backend.close()
        engine.dispose()
        logger.info("api_stopped")

    app = FastAPI(
        title="SceneDesk - Video Scene Detection API",
        description="""
## Video upload and scene detection jobs

Upload videos straight to object storage, queue analysis jobs and follow their
progress live.

### Flow

1. Ask for a presigned upload URL at `/api/videos/upload-url`
2. `PUT` the file to that URL
3. Register it with `/api/videos/process-upload`; a `scene_detection` job is queued
4. Watch `job_progress` / `job_completed` events on the `/ws` WebSocket
5. Read detected scenes from `/api/videos/{id}/scenes`

### Job lifecycle

`queued` -> `processing` -> `completed` | `failed` | `cancelled`; failed jobs can be retried.
        """,
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_tags=[
            {"name": "Health", "description": "Health check endpoints"},
            {"name": "Videos", "description": "Upload, listing and scenes of videos"},
            {"name": "Jobs", "description": "Submission, status, cancel and retry of jobs"},
            {"name": "Metrics", "description": "Dashboard and worker statistics"},
            {"name": "Objects", "description": "Streaming of stored video files"},
        ],
    )

    app.state.settings = settings
    app.state.store = store
    app.state.subscribers = subscribers
    app.state.broadcaster = broadcaster
    app.state.orchestrator = orchestrator
    app.state.storage = storage
    app.state.processor = processor

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info("request_rejected", path=request.url.path, errors=len(exc.errors()))
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled_exception", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    app.include_router(health_router)
    app.include_router(jobs_router, prefix=settings.api_prefix)
    app.include_router(videos_router, prefix=settings.api_prefix)
    app.include_router(metrics_router, prefix=settings.api_prefix)
    app.include_router(objects_router, prefix=settings.object_prefix)
    app.include_router(public_objects_router, prefix=settings.public_object_prefix)
    app.add_api_websocket_route(settings.ws_path, live_updates)

    @app.get("/")
    async def root():
        return {"service": "scenedesk", "version": "1.0.0", "docs": "/docs", "live": settings.ws_path}

    return app


app = create_app()


def run() -> None:
    settings = get_settings()
    uvicorn.run("scenedesk.api.main:app", host=settings.api_host, port=settings.api_port, reload=settings.debug)


if __name__ == "__main__":
    run()
