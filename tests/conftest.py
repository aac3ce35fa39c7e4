"""
Shared fixtures for scenedesk tests.
"""

import os
from unittest.mock import MagicMock

# ============================================================================
# Set test environment BEFORE any scenedesk imports
# ============================================================================
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["QUEUE_BACKEND"] = "memory"
os.environ["REDIS_URL"] = "redis://localhost:6379"
os.environ["MINIO_ENDPOINT"] = "http://localhost:9000"
os.environ["MINIO_ACCESS_KEY"] = "minioadmin"
os.environ["MINIO_SECRET_KEY"] = "minioadmin"
os.environ["MINIO_BUCKET"] = "test-bucket"
os.environ["PROCESSING_STEP_SECONDS"] = "0"
os.environ["DISPATCH_POLL_SECONDS"] = "0.05"
os.environ["LOG_JSON"] = "false"

# Clear cached settings before any import
import scenedesk.core.config
scenedesk.core.config.get_settings.cache_clear()

import pytest
from faker import Faker

from scenedesk.jobs.backends import InMemoryQueueBackend
from scenedesk.jobs.broadcast import EventBroadcaster
from scenedesk.jobs.orchestrator import JobOrchestrator
from scenedesk.models import Base, Job, JobStatus, JobType, Video, VideoStatus, create_db_engine, create_session_factory
from scenedesk.models.base import utcnow
from scenedesk.services import RecordStore, VideoProcessor, default_registry

fake = Faker()


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture(scope="function")
def db_engine():
    """Create in-memory SQLite engine for testing."""
    engine = create_db_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def store(db_engine) -> RecordStore:
    return RecordStore(create_session_factory(db_engine))


# ============================================================================
# Video / Job Fixtures
# ============================================================================


def _make_video(store: RecordStore, **overrides) -> Video:
    """Insert a video row with Faker-generated fields."""
    name = f"{fake.slug()}.mp4"
    fields = {
        "filename": f"/objects/videos/{fake.uuid4()}",
        "original_name": name,
        "file_size": fake.random_int(min=1_000_000, max=500_000_000),
        "format": "mp4",
        "status": VideoStatus.UPLOADED,
    }
    fields.update(overrides)
    return store.create_video(**fields)


def _make_job(store: RecordStore, video: Video, **overrides) -> Job:
    fields = {
        "video_id": video.id,
        "type": JobType.SCENE_DETECTION,
        "status": JobStatus.QUEUED,
        "progress": 0,
        "data": {"filename": video.filename},
    }
    fields.update(overrides)
    return store.create_job(**fields)


@pytest.fixture
def video_factory(store: RecordStore):
    return lambda **overrides: _make_video(store, **overrides)


@pytest.fixture
def job_factory(store: RecordStore):
    return lambda video, **overrides: _make_job(store, video, **overrides)


@pytest.fixture
def test_video(store: RecordStore) -> Video:
    return _make_video(store)


@pytest.fixture
def queued_job(store: RecordStore, test_video: Video) -> Job:
    return _make_job(store, test_video)


@pytest.fixture
def processing_job(store: RecordStore, test_video: Video) -> Job:
    return _make_job(
        store, test_video, status=JobStatus.PROCESSING, progress=40, started_at=utcnow(), attempts=1
    )


@pytest.fixture
def completed_job(store: RecordStore, test_video: Video) -> Job:
    return _make_job(
        store,
        test_video,
        status=JobStatus.COMPLETED,
        progress=100,
        started_at=utcnow(),
        completed_at=utcnow(),
        attempts=1,
    )


@pytest.fixture
def failed_job(store: RecordStore, test_video: Video) -> Job:
    return _make_job(
        store,
        test_video,
        status=JobStatus.FAILED,
        progress=60,
        error="decoder crashed",
        started_at=utcnow(),
        completed_at=utcnow(),
        attempts=1,
        data={"filename": test_video.filename, "result": {"partial": True}},
    )


# ============================================================================
# Orchestration Fixtures
# ============================================================================


@pytest.fixture
def backend() -> InMemoryQueueBackend:
    return InMemoryQueueBackend()


@pytest.fixture
def broadcaster() -> MagicMock:
    """EventBroadcaster stand-in that records every emitted event."""
    return MagicMock(spec=EventBroadcaster)


@pytest.fixture
def processor() -> VideoProcessor:
    return VideoProcessor(step_seconds=0)


@pytest.fixture
async def orchestrator(store, backend, broadcaster, processor):
    orch = JobOrchestrator(
        store,
        backend,
        broadcaster,
        default_registry(processor),
        worker_concurrency=2,
        poll_interval=0.01,
    )
    yield orch
    await orch.stop(grace_seconds=0.5)


@pytest.fixture
def emitted(broadcaster: MagicMock):
    """Returns a callable listing (event type, serialized job) pairs in emission order."""
    return lambda: [(call.args[0].value, call.args[1]["job"]) for call in broadcaster.emit.call_args_list]
