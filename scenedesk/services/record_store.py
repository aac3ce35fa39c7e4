from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import func, or_, select, text, update
from sqlalchemy.orm import Session, joinedload, sessionmaker

from scenedesk.models import Job, JobEvent, JobStatus, Scene, Video, VideoStatus

logger = structlog.get_logger()

STORAGE_CAPACITY_BYTES = 1024 ** 4  # 1TB
HIGH_LOAD_QUEUED_JOBS = 50


class RecordStore:
    """SQLAlchemy-backed persistence for videos, jobs, job events and scenes.

    Every public method runs in its own transaction and returns detached rows;
    a failing write is rolled back and the exception propagates to the caller.
    Status fields are only written through :meth:`transition_job`.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def ping(self) -> None:
        with self._session() as db:
            db.execute(text("SELECT 1"))

    # Videos

    def create_video(self, **fields: Any) -> Video:
        with self._session() as db:
            video = Video(**fields)
            db.add(video)
            db.flush()
            db.refresh(video)
            return video

    def get_video(self, video_id: str) -> Video | None:
        with self._session() as db:
            return db.get(Video, video_id)

    def get_videos(
        self,
        status: str | None = None,
        search: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[Video]:
        with self._session() as db:
            query = select(Video)
            if status:
                query = query.where(Video.status == status)
            if search:
                pattern = f"%{search}%"
                query = query.where(
                    or_(Video.original_name.ilike(pattern), Video.filename.ilike(pattern))
                )
            query = query.order_by(Video.created_at.desc()).limit(limit).offset(offset)
            return list(db.scalars(query))

    def update_video(self, video_id: str, **changes: Any) -> Video | None:
        with self._session() as db:
            video = db.get(Video, video_id)
            if video is None:
                return None
            for key, value in changes.items():
                setattr(video, key, value)
            db.flush()
            return video

    def delete_video(self, video_id: str) -> bool:
        """Remove a video that has no jobs left, e.g. after a failed submission."""
        with self._session() as db:
            video = db.get(Video, video_id)
            if video is None:
                return False
            db.delete(video)
            return True

    # Jobs

    def create_job(self, **fields: Any) -> Job:
        with self._session() as db:
            job = Job(**fields)
            db.add(job)
            db.flush()
            _log_event(db, job.id, "JOB_CREATED", None, job.status)
            return self._load_job(db, job.id)

    def get_job(self, job_id: str) -> Job | None:
        with self._session() as db:
            return self._load_job(db, job_id)

    def get_jobs(
        self,
        status: str | None = None,
        type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Job]:
        with self._session() as db:
            query = select(Job).options(joinedload(Job.video))
            if status:
                query = query.where(Job.status == status)
            if type:
                query = query.where(Job.type == type)
            query = query.order_by(Job.created_at.desc()).limit(limit).offset(offset)
            return list(db.scalars(query))

    def update_job(self, job_id: str, **changes: Any) -> Job | None:
        """Apply a partial update to non-status fields and return the updated row."""
        if {"status", "started_at", "completed_at"} & changes.keys():
            raise ValueError("Job status fields are changed with transition_job()")
        with self._session() as db:
            job = db.get(Job, job_id)
            if job is None:
                return None
            for key, value in changes.items():
                setattr(job, key, value)
            db.flush()
            return self._load_job(db, job_id)

    def update_job_progress(self, job_id: str, progress: int) -> Job | None:
        """Raise a processing job's progress. Returns None when nothing changed."""
        with self._session() as db:
            result = db.execute(
                update(Job)
                .where(
                    Job.id == job_id,
                    Job.status == JobStatus.PROCESSING,
                    Job.progress < progress,
                )
                .values(progress=progress)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
            return self._load_job(db, job_id)

    def delete_job(self, job_id: str) -> bool:
        with self._session() as db:
            job = db.get(Job, job_id)
            if job is None:
                return False
            db.delete(job)
            return True

    def transition_job(
        self,
        job_id: str,
        allowed: Iterable[JobStatus],
        *,
        event_type: str,
        video_status: VideoStatus | None = None,
        scenes: list[dict[str, Any]] | None = None,
        event_data: dict[str, Any] | None = None,
        **changes: Any,
    ) -> Job | None:
        """Compare-and-set a job's status in one transaction.

        The update only applies while the stored status is one of ``allowed``;
        otherwise nothing is written and ``None`` is returned. The owning video
        status, produced scenes and the audit event are written in the same
        transaction.
        """
        allowed = list(allowed)
        with self._session() as db:
            current = db.scalar(select(Job.status).where(Job.id == job_id))
            if current is None or current not in allowed:
                return None

            result = db.execute(
                update(Job)
                .where(Job.id == job_id, Job.status.in_(allowed))
                .values(**changes)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None

            job = self._load_job(db, job_id)
            if video_status is not None:
                job.video.status = video_status
            if scenes:
                db.add_all(_scene_rows(job.video_id, job.id, scenes))
            _log_event(db, job.id, event_type, current, job.status, event_data)
            db.flush()
            return job

    # Scenes

    def get_scenes_by_video(self, video_id: str) -> list[Scene]:
        with self._session() as db:
            query = select(Scene).where(Scene.video_id == video_id).order_by(Scene.start_time)
            return list(db.scalars(query))

    def create_scenes(self, video_id: str, job_id: str, scenes: list[dict[str, Any]]) -> list[Scene]:
        with self._session() as db:
            rows = _scene_rows(video_id, job_id, scenes)
            db.add_all(rows)
            db.flush()
            return rows

    # Audit trail

    def log_event(
        self,
        job_id: str,
        event_type: str,
        old_status: JobStatus | None = None,
        new_status: JobStatus | None = None,
        event_data: dict[str, Any] | None = None,
    ) -> None:
        with self._session() as db:
            _log_event(db, job_id, event_type, old_status, new_status, event_data)

    def get_job_events(self, job_id: str) -> list[JobEvent]:
        with self._session() as db:
            query = (
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(JobEvent.created_at, JobEvent.id)
            )
            return list(db.scalars(query))

    # Dashboard and health

    def get_dashboard_stats(self) -> dict[str, Any]:
        with self._session() as db:
            total_videos = db.scalar(select(func.count()).select_from(Video)) or 0

            month_start = datetime.now(timezone.utc).replace(
                day=1, hour=0, minute=0, second=0, microsecond=0
            )
            videos_this_month = db.scalar(
                select(func.count()).select_from(Video).where(Video.created_at >= month_start)
            ) or 0

            total_segments = db.scalar(select(func.count()).select_from(Scene)) or 0
            total_bytes = db.scalar(select(func.sum(Video.file_size))) or 0

            processing = _count_jobs(db, JobStatus.PROCESSING)
            queued = _count_jobs(db, JobStatus.QUEUED)

            avg_segments = f"{total_segments / total_videos:.1f}" if total_videos else "0"
            storage_used = f"{total_bytes / 1024 ** 3:.1f}GB" if total_bytes else "0GB"

            return {
                "total_videos": total_videos,
                "videos_this_month": videos_this_month,
                "active_jobs": processing + queued,
                "processing_jobs": processing,
                "queued_jobs": queued,
                "total_segments": total_segments,
                "avg_segments_per_video": avg_segments,
                "storage_used": storage_used,
                "storage_percent": round(total_bytes / STORAGE_CAPACITY_BYTES * 100),
            }

    def get_health_status(self) -> dict[str, Any]:
        with self._session() as db:
            db.execute(text("SELECT 1"))
            queued = _count_jobs(db, JobStatus.QUEUED)
            return {
                "database": {"status": "healthy"},
                "queue": {
                    "status": "high_load" if queued > HIGH_LOAD_QUEUED_JOBS else "healthy",
                    "queued": queued,
                    "processing": _count_jobs(db, JobStatus.PROCESSING),
                    "failed": _count_jobs(db, JobStatus.FAILED),
                },
            }

    @staticmethod
    def _load_job(db: Session, job_id: str) -> Job | None:
        # populate_existing forces the joined SELECT even for rows already in the session
        return db.get(Job, job_id, options=[joinedload(Job.video)], populate_existing=True)


def _count_jobs(db: Session, *statuses: JobStatus) -> int:
    query = select(func.count()).select_from(Job)
    if statuses:
        query = query.where(Job.status.in_(statuses))
    return db.scalar(query) or 0


def _scene_rows(video_id: str, job_id: str, scenes: list[dict[str, Any]]) -> list[Scene]:
    return [
        Scene(
            video_id=video_id,
            job_id=job_id,
            start_time=scene["start_time"],
            end_time=scene["end_time"],
            confidence=scene["confidence"],
            thumbnail_url=scene.get("thumbnail_url"),
            scene_metadata=scene.get("metadata"),
        )
        for scene in scenes
    ]


def _log_event(db: Session, job_id: str, event_type: str, old_status, new_status, event_data=None):
    db.add(
        JobEvent(
            job_id=job_id,
            event_type=event_type,
            old_status=old_status,
            new_status=new_status,
            event_data=event_data,
        )
    )
