"""
Unit tests for scenedesk/jobs/orchestrator.py

Covers the job state machine end to end against an in-memory SQLite store and
the in-memory queue backend.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from scenedesk.core.errors import (
    InvalidJobStateError,
    JobNotFoundError,
    ProcessingError,
    UnknownJobTypeError,
    VideoNotFoundError,
)
from scenedesk.jobs.orchestrator import JobOrchestrator
from scenedesk.models import JobStatus, JobType, VideoStatus
from scenedesk.services import ProcessorRegistry


async def wait_for_status(store, job_id, status, timeout=2.0):
    async def _poll():
        while store.get_job(job_id).status != status:
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout)
    return store.get_job(job_id)


class TestSubmit:
    """Tests for JobOrchestrator.submit."""

    @pytest.mark.unit
    async def test_submit_creates_queued_job(self, orchestrator, store, backend, test_video, broadcaster):
        job = await orchestrator.submit(test_video.id, JobType.SCENE_DETECTION, {"filename": "a.mp4"})

        stored = store.get_job(job.id)
        assert stored.status == JobStatus.QUEUED
        assert stored.progress == 0
        assert stored.started_at is None
        assert stored.data == {"filename": "a.mp4"}
        assert await backend.size() == 1
        broadcaster.emit.assert_not_called()

    @pytest.mark.unit
    async def test_submit_accepts_type_as_string(self, orchestrator, test_video):
        job = await orchestrator.submit(test_video.id, "thumbnail_extraction")

        assert job.type == JobType.THUMBNAIL_EXTRACTION

    @pytest.mark.unit
    async def test_submit_unknown_type_rejected(self, orchestrator, store, test_video):
        with pytest.raises(UnknownJobTypeError):
            await orchestrator.submit(test_video.id, "face_blurring")

        assert store.get_jobs() == []

    @pytest.mark.unit
    async def test_submit_unknown_video_rejected(self, orchestrator, store):
        with pytest.raises(VideoNotFoundError):
            await orchestrator.submit("missing-video", JobType.SCENE_DETECTION)

        assert store.get_jobs() == []

    @pytest.mark.unit
    async def test_submit_type_without_processor_rejected(self, store, backend, broadcaster, test_video):
        orch = JobOrchestrator(store, backend, broadcaster, ProcessorRegistry())

        with pytest.raises(UnknownJobTypeError):
            await orch.submit(test_video.id, JobType.SCENE_DETECTION)

    @pytest.mark.unit
    async def test_submit_enqueue_failure_leaves_no_job(self, orchestrator, store, backend, test_video):
        backend.push = AsyncMock(side_effect=ConnectionError("queue down"))

        with pytest.raises(ConnectionError):
            await orchestrator.submit(test_video.id, JobType.SCENE_DETECTION)

        assert store.get_jobs() == []


class TestLifecycle:
    """Full runs through the dispatcher."""

    @pytest.mark.unit
    async def test_scene_detection_runs_to_completion(self, orchestrator, store, test_video, emitted):
        await orchestrator.start()
        job = await orchestrator.submit(test_video.id, JobType.SCENE_DETECTION, {"filename": test_video.filename})

        await orchestrator.wait_for_idle(timeout=5)

        done = store.get_job(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.progress == 100
        assert done.started_at is not None
        assert done.completed_at is not None
        assert done.attempts == 1
        assert done.data["filename"] == test_video.filename
        assert len(done.data["result"]["scenes"]) == 5
        assert store.get_video(test_video.id).status == VideoStatus.COMPLETED

        scenes = store.get_scenes_by_video(test_video.id)
        assert [float(s.start_time) for s in scenes] == [0, 60, 120, 180, 240]
        assert all(s.job_id == job.id for s in scenes)

        events = emitted()
        assert events[0][0] == "job_progress"
        assert events[0][1]["status"] == "processing"
        assert events[-1][0] == "job_completed"
        assert events[-1][1]["progress"] == 100
        progress = [payload["progress"] for kind, payload in events if kind == "job_progress"]
        assert progress == sorted(progress)
        assert progress[-1] == 100

    @pytest.mark.unit
    async def test_preview_generation_stores_result_without_scenes(self, orchestrator, store, test_video):
        await orchestrator.start()
        job = await orchestrator.submit(test_video.id, JobType.PREVIEW_GENERATION)

        await orchestrator.wait_for_idle(timeout=5)

        done = store.get_job(job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.data["result"]["format"] == "jpeg"
        assert store.get_scenes_by_video(test_video.id) == []

    @pytest.mark.unit
    async def test_every_event_refers_to_a_stored_job(self, orchestrator, store, broadcaster, test_video):
        seen = []

        def check(event_type, data):
            assert store.get_job(data["job"]["id"]) is not None
            seen.append(event_type)

        broadcaster.emit.side_effect = check
        await orchestrator.start()
        await orchestrator.submit(test_video.id, JobType.THUMBNAIL_EXTRACTION)
        await orchestrator.wait_for_idle(timeout=5)

        assert seen

    @pytest.mark.unit
    async def test_processor_error_fails_job(self, orchestrator, store, test_video, emitted):
        async def broken(job, reporter, token):
            await reporter.report(30)
            raise ProcessingError("unsupported codec")

        orchestrator.processors.register(JobType.SCENE_DETECTION, broken)
        await orchestrator.start()
        job = await orchestrator.submit(test_video.id, JobType.SCENE_DETECTION)

        await orchestrator.wait_for_idle(timeout=5)

        failed = store.get_job(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.error == "unsupported codec"
        assert failed.progress == 30
        assert failed.completed_at is not None
        assert store.get_video(test_video.id).status == VideoStatus.FAILED
        assert emitted()[-1][0] == "job_failed"
        assert (await orchestrator.get_worker_stats())["failed"] == 1

    @pytest.mark.unit
    async def test_error_without_message_uses_class_name(self, orchestrator, store, test_video):
        async def broken(job, reporter, token):
            raise RuntimeError()

        orchestrator.processors.register(JobType.SCENE_DETECTION, broken)
        await orchestrator.start()
        job = await orchestrator.submit(test_video.id, JobType.SCENE_DETECTION)
        await orchestrator.wait_for_idle(timeout=5)

        assert store.get_job(job.id).error == "RuntimeError"

    @pytest.mark.unit
    async def test_dispatch_is_fifo(self, store, backend, broadcaster, video_factory):
        order = []

        async def record(job, reporter, token):
            order.append(job.job_id)
            return {}

        registry = ProcessorRegistry({JobType.SCENE_DETECTION: record})
        orch = JobOrchestrator(store, backend, broadcaster, registry, worker_concurrency=1, poll_interval=0.01)
        video = video_factory()
        submitted = [(await orch.submit(video.id, JobType.SCENE_DETECTION)).id for _ in range(4)]

        await orch.start()
        await orch.wait_for_idle(timeout=5)
        await orch.stop()

        assert order == submitted

    @pytest.mark.unit
    async def test_concurrency_is_bounded(self, store, backend, broadcaster, video_factory):
        running = 0
        peak = 0

        async def slow(job, reporter, token):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.03)
            running -= 1
            return {}

        registry = ProcessorRegistry({JobType.SCENE_DETECTION: slow})
        orch = JobOrchestrator(store, backend, broadcaster, registry, worker_concurrency=2, poll_interval=0.01)
        video = video_factory()
        ids = [(await orch.submit(video.id, JobType.SCENE_DETECTION)).id for _ in range(6)]

        await orch.start()
        await orch.wait_for_idle(timeout=5)
        await orch.stop()

        assert peak == 2
        assert all(store.get_job(job_id).status == JobStatus.COMPLETED for job_id in ids)

    @pytest.mark.unit
    def test_concurrency_must_be_positive(self, store, backend, broadcaster):
        with pytest.raises(ValueError):
            JobOrchestrator(store, backend, broadcaster, ProcessorRegistry(), worker_concurrency=0)

    @pytest.mark.unit
    async def test_watchdog_fails_hung_job(self, store, backend, broadcaster, test_video):
        async def hung(job, reporter, token):
            await token.sleep(10)
            return {}

        registry = ProcessorRegistry({JobType.SCENE_DETECTION: hung})
        orch = JobOrchestrator(
            store, backend, broadcaster, registry, job_timeout_seconds=0.05, poll_interval=0.01
        )
        await orch.start()
        job = await orch.submit(test_video.id, JobType.SCENE_DETECTION)

        await orch.wait_for_idle(timeout=5)
        await orch.stop()

        failed = store.get_job(job.id)
        assert failed.status == JobStatus.FAILED
        assert "maximum duration" in failed.error


class TestCancel:
    """Tests for JobOrchestrator.cancel."""

    @pytest.mark.unit
    async def test_cancel_queued_job(self, orchestrator, store, backend, test_video, emitted):
        job = await orchestrator.submit(test_video.id, JobType.SCENE_DETECTION)

        cancelled = await orchestrator.cancel(job.id)

        assert cancelled.status == JobStatus.CANCELLED
        assert cancelled.progress == 0
        assert cancelled.completed_at is not None
        assert await backend.size() == 0
        assert store.get_video(test_video.id).status == VideoStatus.CANCELLED
        assert emitted() == [("job_cancelled", emitted()[0][1])]
        assert emitted()[0][1]["id"] == job.id

        # the dispatcher never picks it up
        await orchestrator.start()
        await asyncio.sleep(0.05)
        assert store.get_job(job.id).status == JobStatus.CANCELLED

    @pytest.mark.unit
    @pytest.mark.parametrize("fixture_name", ["completed_job", "failed_job"])
    async def test_cancel_settled_job_rejected(self, request, orchestrator, store, broadcaster, fixture_name):
        job = request.getfixturevalue(fixture_name)

        with pytest.raises(InvalidJobStateError):
            await orchestrator.cancel(job.id)

        assert store.get_job(job.id).status == job.status
        broadcaster.emit.assert_not_called()

    @pytest.mark.unit
    async def test_cancel_unknown_job(self, orchestrator):
        with pytest.raises(JobNotFoundError):
            await orchestrator.cancel("does-not-exist")

    @pytest.mark.unit
    async def test_cancel_running_job_stops_processor(self, orchestrator, store, test_video, emitted):
        stopped = asyncio.Event()

        async def long_running(job, reporter, token):
            await reporter.report(10)
            try:
                await token.sleep(10)
            finally:
                stopped.set()
            return {"never": True}

        orchestrator.processors.register(JobType.SCENE_DETECTION, long_running)
        await orchestrator.start()
        job = await orchestrator.submit(test_video.id, JobType.SCENE_DETECTION)
        await wait_for_status(store, job.id, JobStatus.PROCESSING)

        await orchestrator.cancel(job.id)
        await asyncio.wait_for(stopped.wait(), timeout=1)
        await orchestrator.wait_for_idle(timeout=2)

        final = store.get_job(job.id)
        assert final.status == JobStatus.CANCELLED
        assert final.data is None
        assert emitted()[-1][0] == "job_cancelled"

    @pytest.mark.unit
    async def test_late_result_of_cancelled_run_is_discarded(self, orchestrator, store, test_video, emitted):
        cancelled = asyncio.Event()

        async def ignores_token(job, reporter, token):
            await reporter.report(20)
            await cancelled.wait()
            await reporter.report(90)
            return {"scenes": [{"start_time": 0, "end_time": 5, "confidence": 0.9}]}

        orchestrator.processors.register(JobType.SCENE_DETECTION, ignores_token)
        await orchestrator.start()
        job = await orchestrator.submit(test_video.id, JobType.SCENE_DETECTION)
        await wait_for_status(store, job.id, JobStatus.PROCESSING)
        await asyncio.sleep(0.01)

        await orchestrator.cancel(job.id)
        cancelled.set()
        await orchestrator.wait_for_idle(timeout=2)

        final = store.get_job(job.id)
        assert final.status == JobStatus.CANCELLED
        assert final.progress == 20
        assert store.get_scenes_by_video(test_video.id) == []
        kinds = [kind for kind, _ in emitted()]
        assert kinds[-1] == "job_cancelled"
        assert "job_completed" not in kinds


class TestRetry:
    """Tests for JobOrchestrator.retry."""

    @pytest.mark.unit
    async def test_retry_resets_failed_job(self, orchestrator, store, backend, failed_job, emitted):
        retried = await orchestrator.retry(failed_job.id)

        assert retried.status == JobStatus.QUEUED
        assert retried.progress == 0
        assert retried.error is None
        assert retried.started_at is None
        assert retried.completed_at is None
        assert "result" not in retried.data
        assert await backend.size() == 1
        assert emitted()[-1][0] == "job_retried"

    @pytest.mark.unit
    async def test_retried_job_runs_again(self, orchestrator, store, failed_job):
        await orchestrator.retry(failed_job.id)
        await orchestrator.start()
        await orchestrator.wait_for_idle(timeout=5)

        done = store.get_job(failed_job.id)
        assert done.status == JobStatus.COMPLETED
        assert done.progress == 100
        assert done.attempts == 2

    @pytest.mark.unit
    @pytest.mark.parametrize("fixture_name", ["queued_job", "processing_job", "completed_job"])
    async def test_retry_requires_failed_status(self, request, orchestrator, store, fixture_name):
        job = request.getfixturevalue(fixture_name)

        with pytest.raises(InvalidJobStateError):
            await orchestrator.retry(job.id)

        assert store.get_job(job.id).status == job.status

    @pytest.mark.unit
    async def test_retry_unknown_job(self, orchestrator):
        with pytest.raises(JobNotFoundError):
            await orchestrator.retry("does-not-exist")

    @pytest.mark.unit
    async def test_retry_enqueue_failure_keeps_job_failed(self, orchestrator, store, backend, failed_job, broadcaster):
        backend.push = AsyncMock(side_effect=ConnectionError("queue down"))

        with pytest.raises(ConnectionError):
            await orchestrator.retry(failed_job.id)

        job = store.get_job(failed_job.id)
        assert job.status == JobStatus.FAILED
        assert job.error == "decoder crashed"
        assert job.completed_at is not None
        broadcaster.emit.assert_not_called()


class TestProgress:
    """Tests for progress reports and worker callbacks."""

    @pytest.mark.unit
    async def test_report_progress_on_processing_job(self, orchestrator, processing_job, emitted):
        job = await orchestrator.report_progress(processing_job.id, 70)

        assert job.progress == 70
        assert emitted() == [("job_progress", emitted()[0][1])]

    @pytest.mark.unit
    async def test_progress_never_decreases(self, orchestrator, store, processing_job, broadcaster):
        job = await orchestrator.report_progress(processing_job.id, 10)

        assert job.progress == 40
        assert store.get_job(processing_job.id).progress == 40
        broadcaster.emit.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.parametrize("reported,stored", [(150, 100), (-5, 40)])
    async def test_progress_is_clamped(self, orchestrator, processing_job, reported, stored):
        job = await orchestrator.report_progress(processing_job.id, reported)

        assert job.progress == stored

    @pytest.mark.unit
    @pytest.mark.parametrize("fixture_name", ["queued_job", "completed_job", "failed_job"])
    async def test_progress_ignored_outside_processing(self, request, orchestrator, store, broadcaster, fixture_name):
        job = request.getfixturevalue(fixture_name)

        await orchestrator.report_progress(job.id, 99)

        assert store.get_job(job.id).progress == job.progress
        broadcaster.emit.assert_not_called()

    @pytest.mark.unit
    async def test_report_progress_unknown_job(self, orchestrator):
        with pytest.raises(JobNotFoundError):
            await orchestrator.report_progress("does-not-exist", 50)

    @pytest.mark.unit
    async def test_external_worker_lifecycle(self, orchestrator, store, backend, test_video, emitted):
        job = await orchestrator.submit(test_video.id, JobType.SCENE_DETECTION)

        started = await orchestrator.apply_update(job.id, status=JobStatus.PROCESSING, progress=5)
        assert started.status == JobStatus.PROCESSING
        assert started.started_at is not None
        assert started.attempts == 1
        assert await backend.size() == 0

        await orchestrator.apply_update(job.id, progress=55)
        done = await orchestrator.apply_update(job.id, status=JobStatus.COMPLETED)

        assert done.status == JobStatus.COMPLETED
        assert done.progress == 100
        assert done.completed_at is not None
        assert store.get_video(test_video.id).status == VideoStatus.COMPLETED
        assert [kind for kind, _ in emitted()] == ["job_progress", "job_progress", "job_completed"]

    @pytest.mark.unit
    async def test_external_worker_failure(self, orchestrator, processing_job):
        failed = await orchestrator.apply_update(processing_job.id, status=JobStatus.FAILED, error="disk full")

        assert failed.status == JobStatus.FAILED
        assert failed.error == "disk full"

    @pytest.mark.unit
    async def test_illegal_callback_transition_rejected(self, orchestrator, store, queued_job):
        with pytest.raises(InvalidJobStateError):
            await orchestrator.apply_update(queued_job.id, status=JobStatus.COMPLETED)

        assert store.get_job(queued_job.id).status == JobStatus.QUEUED

    @pytest.mark.unit
    async def test_callback_cancel_and_retry(self, orchestrator, store, processing_job, failed_job):
        cancelled = await orchestrator.apply_update(processing_job.id, status=JobStatus.CANCELLED)
        retried = await orchestrator.apply_update(failed_job.id, status=JobStatus.QUEUED)

        assert cancelled.status == JobStatus.CANCELLED
        assert retried.status == JobStatus.QUEUED


class TestStatsAndRecovery:
    """Tests for worker stats, shutdown and startup recovery."""

    @pytest.mark.unit
    async def test_worker_stats_snapshot(self, orchestrator, store, test_video):
        release = asyncio.Event()

        async def blocked(job, reporter, token):
            await reporter.report(25)
            await release.wait()
            return {}

        orchestrator.processors.register(JobType.SCENE_DETECTION, blocked)
        await orchestrator.start()
        running = await orchestrator.submit(test_video.id, JobType.SCENE_DETECTION)
        await wait_for_status(store, running.id, JobStatus.PROCESSING)
        await asyncio.sleep(0.01)

        stats = await orchestrator.get_worker_stats()

        assert stats["active"] == 1
        assert stats["completed"] == 0
        assert stats["workers"] == [
            {"id": "worker-1", "status": "processing", "job_id": running.id, "progress": 25}
        ]

        release.set()
        await orchestrator.wait_for_idle(timeout=2)
        stats = await orchestrator.get_worker_stats()
        assert stats["active"] == 0
        assert stats["completed"] == 1

    @pytest.mark.unit
    async def test_recover_interrupted_requeues_jobs(self, orchestrator, store, backend, processing_job, job_factory, test_video):
        waiting = job_factory(test_video)

        recovered = await orchestrator.recover_interrupted()

        assert recovered == 2
        assert store.get_job(processing_job.id).status == JobStatus.QUEUED
        assert store.get_job(processing_job.id).progress == 0
        assert await backend.size() == 2
        assert waiting.id in {await backend.pop(timeout=0), await backend.pop(timeout=0)}

    @pytest.mark.unit
    async def test_recover_skips_waiting_jobs_on_durable_queue(self, orchestrator, backend, queued_job):
        recovered = await orchestrator.recover_interrupted(requeue_waiting=False)

        assert recovered == 0
        assert await backend.size() == 0

    @pytest.mark.unit
    async def test_start_and_stop(self, orchestrator):
        await orchestrator.start()
        assert orchestrator.running

        await orchestrator.stop()
        assert not orchestrator.running
