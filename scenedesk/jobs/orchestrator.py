"""Job orchestration: the single writer of job lifecycle transitions.

State machine::

    queued --> processing --> completed
                         \\-> failed --(retry)--> queued
    queued | processing --(cancel)--> cancelled

Worker processors never touch the record store. They receive a
``ProgressReporter`` and a ``CancellationToken`` and return a result (or raise);
the orchestrator persists every transition and hands the matching event to the
broadcaster.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from functools import partial
from typing import Any

import structlog

from scenedesk.core.errors import (
    InvalidJobStateError,
    JobCancelledError,
    JobNotFoundError,
    UnknownJobTypeError,
    VideoNotFoundError,
)
from scenedesk.jobs.backends import QueueBackend
from scenedesk.jobs.broadcast import EventBroadcaster
from scenedesk.jobs.progress import CancellationToken, ProgressReporter
from scenedesk.models import ACTIVE_STATUSES, Job, JobStatus, JobType, VideoStatus
from scenedesk.models.base import utcnow
from scenedesk.schemas.events import EventType
from scenedesk.schemas.job import serialize_job
from scenedesk.services.processors import JobInput, ProcessorRegistry
from scenedesk.services.record_store import RecordStore

logger = structlog.get_logger()

MAX_ERROR_LENGTH = 2000


@dataclass
class ActiveRun:
    job_id: str
    token: CancellationToken = field(default_factory=CancellationToken)
    progress: int = 0


class JobOrchestrator:
    def __init__(
        self,
        store: RecordStore,
        backend: QueueBackend,
        broadcaster: EventBroadcaster,
        processors: ProcessorRegistry,
        worker_concurrency: int = 2,
        job_timeout_seconds: float | None = None,
        poll_interval: float = 1.0,
    ) -> None:
        if worker_concurrency < 1:
            raise ValueError("worker_concurrency must be at least 1")
        self.store = store
        self.backend = backend
        self.broadcaster = broadcaster
        self.processors = processors
        self.worker_concurrency = worker_concurrency
        self.job_timeout_seconds = job_timeout_seconds
        self.poll_interval = poll_interval

        self._slots = asyncio.Semaphore(worker_concurrency)
        self._runs: dict[str, ActiveRun] = {}
        self._tasks: set[asyncio.Task] = set()
        self._dispatcher: asyncio.Task | None = None
        self._stopping = False
        self._completed = 0
        self._failed = 0

    # Commands

    async def submit(self, video_id: str, job_type: JobType | str, data: dict[str, Any] | None = None) -> Job:
        """Create a queued job and schedule it. Does not wait for processing."""
        try:
            job_type = JobType(job_type)
        except ValueError:
            raise UnknownJobTypeError(f"Unknown job type: {job_type}")
        if job_type not in self.processors:
            raise UnknownJobTypeError(f"No processor registered for job type: {job_type.value}")

        if self.store.get_video(video_id) is None:
            raise VideoNotFoundError(video_id)

        job = self.store.create_job(
            video_id=video_id,
            type=job_type,
            status=JobStatus.QUEUED,
            progress=0,
            data=data,
        )

        try:
            await self.backend.push(job.id)
        except Exception as e:
            logger.error("job_enqueue_failed", job_id=job.id, error=str(e))
            self.store.delete_job(job.id)
            raise

        logger.info("job_submitted", job_id=job.id, video_id=video_id, type=job_type.value)
        return job

    async def cancel(self, job_id: str) -> Job:
        job = self._get_job(job_id)
        if job.status not in ACTIVE_STATUSES:
            raise InvalidJobStateError(job_id, job.status.value, "cancel")

        cancelled = self.store.transition_job(
            job_id,
            ACTIVE_STATUSES,
            event_type="JOB_CANCELLED",
            video_status=VideoStatus.CANCELLED,
            status=JobStatus.CANCELLED,
            completed_at=utcnow(),
        )
        if cancelled is None:
            raise InvalidJobStateError(job_id, self._get_job(job_id).status.value, "cancel")

        run = self._runs.get(job_id)
        if run is not None:
            run.token.cancel()
        await self.backend.remove(job_id)

        logger.info("job_cancelled", job_id=job_id, was=job.status.value)
        self._emit(EventType.JOB_CANCELLED, cancelled)
        return cancelled

    async def retry(self, job_id: str) -> Job:
        job = self._get_job(job_id)
        if job.status != JobStatus.FAILED or job_id in self._runs:
            raise InvalidJobStateError(job_id, job.status.value, "retry")

        data = {k: v for k, v in (job.data or {}).items() if k != "result"} or None
        retried = self.store.transition_job(
            job_id,
            [JobStatus.FAILED],
            event_type="JOB_RETRIED",
            status=JobStatus.QUEUED,
            progress=0,
            error=None,
            data=data,
            started_at=None,
            completed_at=None,
        )
        if retried is None:
            raise InvalidJobStateError(job_id, self._get_job(job_id).status.value, "retry")

        try:
            await self.backend.push(job_id)
        except Exception as e:
            logger.error("job_enqueue_failed", job_id=job_id, error=str(e))
            self.store.transition_job(
                job_id,
                [JobStatus.QUEUED],
                event_type="JOB_RETRY_REVERTED",
                status=JobStatus.FAILED,
                progress=job.progress,
                error=job.error,
                data=job.data,
                started_at=job.started_at,
                completed_at=job.completed_at,
            )
            raise

        logger.info("job_retried", job_id=job_id, attempts=job.attempts)
        self._emit(EventType.JOB_RETRIED, retried)
        return retried

    async def report_progress(self, job_id: str, progress: int) -> Job:
        """Record progress for a processing job.

        Reports for jobs that are not processing, or that would lower the
        current progress, are discarded and the stored job is returned as is.
        """
        job = self._get_job(job_id)
        updated = self._store_progress(job_id, progress)
        if updated is None:
            return job
        run = self._runs.get(job_id)
        if run is not None:
            run.progress = updated.progress
        return updated

    async def apply_update(
        self,
        job_id: str,
        progress: int | None = None,
        status: JobStatus | None = None,
        error: str | None = None,
    ) -> Job:
        """Apply a worker callback carrying progress and/or a status change."""
        job = self._get_job(job_id)

        if status is None or status == job.status:
            if progress is None:
                return job
            return await self.report_progress(job_id, progress)

        if status == JobStatus.CANCELLED:
            return await self.cancel(job_id)
        if status == JobStatus.QUEUED:
            return await self.retry(job_id)
        if status == JobStatus.PROCESSING:
            return await self._start_external(job, progress)
        if status == JobStatus.COMPLETED:
            return self._settle_success(job_id, job.data, {}) or self._reject(job, status)
        if status == JobStatus.FAILED:
            return self._settle_failure(job_id, error or "Unknown error") or self._reject(job, status)
        return self._reject(job, status)

    # Queries

    async def get_worker_stats(self) -> dict[str, Any]:
        waiting = await self.backend.size()
        workers = [
            {"id": f"worker-{index}", "status": "processing", "job_id": run.job_id, "progress": run.progress}
            for index, run in enumerate(self._runs.values(), start=1)
        ]
        return {
            "waiting": waiting,
            "active": len(self._runs),
            "completed": self._completed,
            "failed": self._failed,
            "workers": workers,
        }

    @property
    def running(self) -> bool:
        return self._dispatcher is not None and not self._dispatcher.done()

    # Dispatcher lifecycle

    async def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="job-dispatcher")
        logger.info("dispatcher_started", concurrency=self.worker_concurrency)

    async def stop(self, grace_seconds: float = 5.0) -> None:
        """Stop dispatching, give running jobs ``grace_seconds`` to finish, then cancel them."""
        self._stopping = True
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None

        if self._tasks:
            _, pending = await asyncio.wait(set(self._tasks), timeout=grace_seconds)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.wait(pending)
        logger.info("dispatcher_stopped")

    async def wait_for_idle(self, timeout: float = 10.0) -> None:
        """Block until the queue is empty and nothing is running."""

        async def _idle() -> None:
            while self._runs or self._tasks or await self.backend.size():
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_idle(), timeout=timeout)

    async def recover_interrupted(self, requeue_waiting: bool = True) -> int:
        """Put jobs left behind by a previous process back on the queue.

        Jobs stuck in ``processing`` with no live run here are reset to
        ``queued``. Already queued jobs are re-pushed when ``requeue_waiting``
        is set, which is what a non-durable backend needs after a restart.
        """
        waiting = self.store.get_jobs(status=JobStatus.QUEUED, limit=10_000) if requeue_waiting else []

        recovered = 0
        for job in self.store.get_jobs(status=JobStatus.PROCESSING, limit=10_000):
            if job.id in self._runs:
                continue
            reset = self.store.transition_job(
                job.id,
                [JobStatus.PROCESSING],
                event_type="PROCESSING_INTERRUPTED",
                status=JobStatus.QUEUED,
                progress=0,
                started_at=None,
            )
            if reset is not None:
                await self.backend.push(job.id)
                recovered += 1

        for job in sorted(waiting, key=lambda j: j.created_at):
            await self.backend.push(job.id)
            recovered += 1

        if recovered:
            logger.info("jobs_recovered", count=recovered)
        return recovered

    async def _dispatch_loop(self) -> None:
        while not self._stopping:
            await self._slots.acquire()
            try:
                job_id = await self.backend.pop(timeout=self.poll_interval)
            except asyncio.CancelledError:
                self._slots.release()
                raise
            except Exception as e:
                self._slots.release()
                logger.error("queue_pop_failed", error=str(e))
                await asyncio.sleep(self.poll_interval)
                continue

            if job_id is None:
                self._slots.release()
                continue

            task = asyncio.create_task(self._run(job_id), name=f"job-{job_id}")
            self._tasks.add(task)
            task.add_done_callback(self._on_run_done)

    def _on_run_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._slots.release()
        if not task.cancelled() and task.exception() is not None:
            logger.error("job_run_crashed", task=task.get_name(), error=str(task.exception()))

    # Running a job

    async def _run(self, job_id: str) -> None:
        if job_id in self._runs:
            logger.warning("duplicate_dispatch_skipped", job_id=job_id)
            return

        job = self.store.transition_job(
            job_id,
            [JobStatus.QUEUED],
            event_type="PROCESSING_STARTED",
            video_status=VideoStatus.PROCESSING,
            status=JobStatus.PROCESSING,
            progress=0,
            started_at=utcnow(),
            attempts=Job.attempts + 1,
        )
        if job is None:
            # cancelled while waiting, or already picked up elsewhere
            logger.info("job_skipped", job_id=job_id)
            return

        run = ActiveRun(job_id=job_id)
        self._runs[job_id] = run
        logger.info("processing_started", job_id=job_id, type=job.type.value, attempt=job.attempts)
        self._emit(EventType.JOB_PROGRESS, job)

        error: str | None = None
        result: dict[str, Any] = {}
        try:
            result = await self._execute(job, run)
        except JobCancelledError:
            logger.info("processing_stopped", job_id=job_id, reason="cancelled")
            return
        except asyncio.TimeoutError:
            run.token.cancel()
            error = f"Job exceeded maximum duration of {self.job_timeout_seconds}s"
        except Exception as e:
            error = str(e) or e.__class__.__name__
        finally:
            self._runs.pop(job_id, None)

        if run.token.cancelled and error is None:
            logger.info("late_result_discarded", job_id=job_id)
            return

        if error is None:
            self._settle_success(job_id, job.data, result)
        else:
            logger.warning("processing_failed", job_id=job_id, error=error)
            self._settle_failure(job_id, error)

    async def _execute(self, job: Job, run: ActiveRun) -> dict[str, Any]:
        processor = self.processors.get(job.type)
        data = dict(job.data or {})
        job_input = JobInput(
            job_id=job.id,
            video_id=job.video_id,
            type=job.type,
            filename=data.get("filename") or (job.video.filename if job.video else None),
            data=data,
        )
        reporter = ProgressReporter(partial(self._report_from_run, job.id, run), run.token)
        work = processor(job_input, reporter, run.token)
        if self.job_timeout_seconds:
            return await asyncio.wait_for(work, timeout=self.job_timeout_seconds)
        return await work

    async def _report_from_run(self, job_id: str, run: ActiveRun, progress: int) -> None:
        if run.token.cancelled or self._runs.get(job_id) is not run:
            logger.debug("progress_discarded", job_id=job_id, reason="stale_run")
            return
        updated = self._store_progress(job_id, progress)
        if updated is not None:
            run.progress = updated.progress

    def _store_progress(self, job_id: str, progress: int) -> Job | None:
        value = max(0, min(100, int(progress)))
        updated = self.store.update_job_progress(job_id, value)
        if updated is None:
            logger.debug("progress_discarded", job_id=job_id, progress=value)
            return None
        self._emit(EventType.JOB_PROGRESS, updated)
        return updated

    async def _start_external(self, job: Job, progress: int | None) -> Job:
        started = self.store.transition_job(
            job.id,
            [JobStatus.QUEUED],
            event_type="PROCESSING_STARTED",
            video_status=VideoStatus.PROCESSING,
            status=JobStatus.PROCESSING,
            progress=max(0, min(100, int(progress or 0))),
            started_at=utcnow(),
            attempts=Job.attempts + 1,
        )
        if started is None:
            return self._reject(job, JobStatus.PROCESSING)
        await self.backend.remove(job.id)
        self._emit(EventType.JOB_PROGRESS, started)
        return started

    def _settle_success(self, job_id: str, input_data: dict | None, result: dict[str, Any]) -> Job | None:
        scenes = result.get("scenes") or []
        job = self.store.transition_job(
            job_id,
            [JobStatus.PROCESSING],
            event_type="PROCESSING_COMPLETED",
            video_status=VideoStatus.COMPLETED,
            scenes=scenes,
            event_data={"scene_count": len(scenes)} if scenes else None,
            status=JobStatus.COMPLETED,
            progress=100,
            completed_at=utcnow(),
            data={**(input_data or {}), "result": result} if result else input_data,
        )
        if job is None:
            logger.info("late_result_discarded", job_id=job_id)
            return None
        self._stop_run(job_id)
        self._completed += 1
        logger.info("processing_completed", job_id=job_id, scene_count=len(scenes))
        self._emit(EventType.JOB_COMPLETED, job)
        return job

    def _settle_failure(self, job_id: str, error: str) -> Job | None:
        job = self.store.transition_job(
            job_id,
            [JobStatus.PROCESSING],
            event_type="PROCESSING_FAILED",
            video_status=VideoStatus.FAILED,
            event_data={"error": error[:500]},
            status=JobStatus.FAILED,
            error=error[:MAX_ERROR_LENGTH],
            completed_at=utcnow(),
        )
        if job is None:
            logger.info("late_failure_discarded", job_id=job_id)
            return None
        self._stop_run(job_id)
        self._failed += 1
        self._emit(EventType.JOB_FAILED, job)
        return job

    def _stop_run(self, job_id: str) -> None:
        # A callback settled the job while a local run was still going.
        run = self._runs.get(job_id)
        if run is not None:
            run.token.cancel()

    def _reject(self, job: Job, status: JobStatus) -> Job:
        current = self._get_job(job.id)
        raise InvalidJobStateError(job.id, current.status.value, f"move to {status.value}")

    def _get_job(self, job_id: str) -> Job:
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _emit(self, event_type: EventType, job: Job) -> None:
        self.broadcaster.emit(event_type, {"job": serialize_job(job)})
