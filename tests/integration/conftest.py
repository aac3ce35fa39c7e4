"""
Integration test fixtures for scenedesk.

These fixtures provide a full FastAPI test client with an in-memory database,
the in-memory queue and a mocked object storage.
"""

import time
from typing import Generator
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from scenedesk.api.main import create_app
from scenedesk.core.config import Settings
from scenedesk.models import Base, Video, VideoStatus, create_db_engine
from scenedesk.services import RecordStore, StorageService

UPLOAD_URL = "http://localhost:9000/test-bucket/videos/3f1c2b7e?X-Amz-Signature=abc"
OBJECT_PATH = "/objects/videos/3f1c2b7e"


@pytest.fixture(scope="function")
def integration_engine():
    """Create in-memory SQLite engine for integration tests."""
    engine = create_db_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture
def mock_storage() -> MagicMock:
    storage = MagicMock(spec=StorageService)
    storage.generate_upload_url.return_value = UPLOAD_URL
    storage.object_path_from_upload_url.return_value = OBJECT_PATH
    storage.key_from_object_path.return_value = "videos/3f1c2b7e"
    storage.ensure_bucket_exists.return_value = None
    return storage


def _client(engine, storage, **overrides) -> Generator[TestClient, None, None]:
    settings = Settings(
        _env_file=None,
        processing_step_seconds=0,
        dispatch_poll_seconds=0.01,
        log_json=False,
        **overrides,
    )
    app = create_app(settings=settings, engine=engine, storage=storage)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture(scope="function")
def client(integration_engine, mock_storage) -> Generator[TestClient, None, None]:
    """API-only node: jobs stay queued until a worker callback moves them."""
    yield from _client(integration_engine, mock_storage, worker_enabled=False)


@pytest.fixture(scope="function")
def worker_client(integration_engine, mock_storage) -> Generator[TestClient, None, None]:
    """Node that also dispatches and runs jobs."""
    yield from _client(integration_engine, mock_storage, worker_enabled=True, worker_concurrency=2)


@pytest.fixture
def api_store(client: TestClient) -> RecordStore:
    return client.app.state.store


@pytest.fixture
def api_video(api_store: RecordStore) -> Video:
    return api_store.create_video(
        filename=OBJECT_PATH,
        original_name="launch-keynote.mp4",
        file_size=52_428_800,
        format="mp4",
        status=VideoStatus.UPLOADED,
    )


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01):
    """Poll ``predicate`` from the test thread until it returns a truthy value."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = predicate()
        if result:
            return result
        time.sleep(interval)
    raise AssertionError("condition not met before timeout")


@pytest.fixture
def poll():
    return wait_for
