import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from scenedesk.core.errors import UnknownJobTypeError
from scenedesk.jobs.progress import CancellationToken, ProgressReporter
from scenedesk.models.job import JobType

logger = structlog.get_logger()


@dataclass(frozen=True)
class JobInput:
    job_id: str
    video_id: str
    type: JobType
    filename: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


Processor = Callable[[JobInput, ProgressReporter, CancellationToken], Awaitable[dict[str, Any]]]


def _step_progress(step: int, total_steps: int) -> int:
    return round((step + 1) / total_steps * 100)


class VideoProcessor:
    """Simulated video analysis.

    Each operation advances in fixed steps, sleeping ``step_seconds`` times a
    per-operation weight between steps and reporting progress after each one.
    A real implementation plugs a codec/vision library in behind the same
    ``(JobInput, ProgressReporter, CancellationToken)`` contract.
    """

    def __init__(self, step_seconds: float = 1.0, rng: random.Random | None = None) -> None:
        self.step_seconds = step_seconds
        self._rng = rng or random.Random()

    async def detect_scenes(
        self, job: JobInput, reporter: ProgressReporter, token: CancellationToken
    ) -> dict[str, Any]:
        total_steps = 10
        scenes = []

        logger.info("scene_detection_started", job_id=job.job_id, filename=job.filename)

        for i in range(total_steps):
            await token.sleep(2 * self.step_seconds)
            await reporter.report(_step_progress(i, total_steps))

            if i % 2 == 0:
                scenes.append({
                    "start_time": i * 30,
                    "end_time": (i + 1) * 30,
                    "confidence": round(0.7 + self._rng.random() * 0.3, 4),
                    "thumbnail_url": None,
                    "metadata": {"algorithm": "mock_detector", "version": "1.0.0"},
                })

        return {
            "scenes": scenes,
            "algorithm": "mock_scene_detector",
            "processing_time": total_steps * 2,
        }

    async def generate_previews(
        self, job: JobInput, reporter: ProgressReporter, token: CancellationToken
    ) -> dict[str, Any]:
        total_steps = 8

        for i in range(total_steps):
            await token.sleep(1.5 * self.step_seconds)
            await reporter.report(_step_progress(i, total_steps))

        return {
            "preview_urls": [f"/api/previews/preview_{n}.jpg" for n in range(1, 4)],
            "format": "jpeg",
            "resolution": "320x180",
        }

    async def extract_thumbnails(
        self, job: JobInput, reporter: ProgressReporter, token: CancellationToken
    ) -> dict[str, Any]:
        total_steps = 5

        for i in range(total_steps):
            await token.sleep(self.step_seconds)
            await reporter.report(_step_progress(i, total_steps))

        return {
            "thumbnails": [f"/api/thumbnails/thumb_{n}.jpg" for n in range(1, 4)],
            "format": "jpeg",
            "size": "160x90",
        }

    def get_video_metadata(self, filename: str) -> dict[str, Any]:
        """Mock metadata extraction used to fill in a freshly uploaded video."""
        return {
            "duration": 120.5,
            "resolution": "1920x1080",
            "fps": 30,
            "bitrate": 5_000_000,
            "codec": "h264",
        }


class ProcessorRegistry:
    """Maps each job type to the processor that handles it."""

    def __init__(self, processors: dict[JobType, Processor] | None = None) -> None:
        self._processors: dict[JobType, Processor] = dict(processors or {})

    def register(self, job_type: JobType, processor: Processor) -> None:
        self._processors[JobType(job_type)] = processor

    def get(self, job_type: JobType) -> Processor:
        try:
            return self._processors[JobType(job_type)]
        except (KeyError, ValueError):
            raise UnknownJobTypeError(f"No processor registered for job type: {job_type}")

    def __contains__(self, job_type) -> bool:
        try:
            return JobType(job_type) in self._processors
        except ValueError:
            return False


def default_registry(processor: VideoProcessor) -> ProcessorRegistry:
    return ProcessorRegistry({
        JobType.SCENE_DETECTION: processor.detect_scenes,
        JobType.PREVIEW_GENERATION: processor.generate_previews,
        JobType.THUMBNAIL_EXTRACTION: processor.extract_thumbnails,
    })
