# scribe/jobs.py
"""Job store: the persistence contract the worker, handler and reclaimer run against."""
import abc
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import delete, insert, select, update
from sqlalchemy.exc import SQLAlchemyError

from scribe.errors import StoreError
from scribe.models import (
    CLAIMABLE_STATUSES, AudioFile, Job, JobLog, JobStatus, LogLevel, ProgressStage,
    Transcription, TranscriptionSegment, utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class JobFilter:
    statuses: Optional[Sequence[JobStatus]] = None
    job_type: Optional[str] = None
    user_id: Optional[int] = None
    transcription_id: Optional[str] = None
    started_before: Optional[datetime] = None
    # True: attempts used up, False: attempts left, None: either
    exhausted: Optional[bool] = None
    limit: Optional[int] = None
    newest_first: bool = False


class JobStore(abc.ABC):
    @abc.abstractmethod
    async def list_jobs(self, flt: JobFilter) -> List[Job]: ...

    @abc.abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]: ...

    @abc.abstractmethod
    async def claim_job(self, job_id: str) -> Optional[Job]:
        """Move a claimable job to ``processing``; None when another caller won or it is gone."""

    @abc.abstractmethod
    async def update_job(self, job_id: str, patch: Dict[str, Any], *,
                         expected_status: Optional[JobStatus] = None) -> bool:
        """Apply ``patch``; with ``expected_status`` only if the row still has that status."""

    @abc.abstractmethod
    async def insert_segments(self, rows: List[dict]) -> None: ...

    @abc.abstractmethod
    async def delete_segments(self, transcription_id: str) -> None: ...

    @abc.abstractmethod
    async def update_transcription(self, transcription_id: str, patch: Dict[str, Any]) -> None: ...

    @abc.abstractmethod
    async def get_file(self, file_id: str) -> Optional[AudioFile]: ...

    @abc.abstractmethod
    async def get_signed_download_url(self, bucket: str, path: str, ttl_seconds: int = 3600) -> str: ...

    @abc.abstractmethod
    async def add_job_log(self, job_id: str, message: str, level: LogLevel = LogLevel.info) -> None: ...

    async def persist_transcription_result(self, transcription_id: str, rows: List[dict],
                                           patch: Dict[str, Any]) -> None:
        # No transaction available here: replace segments first, status update last,
        # so a half-written result never shows up as completed.
        await self.delete_segments(transcription_id)
        if rows:
            await self.insert_segments(rows)
        await self.update_transcription(transcription_id, patch)

    async def log(self, job_id: str, message: str, level: LogLevel = LogLevel.info) -> None:
        """Best-effort job log write; failures only reach the process log."""
        try:
            await self.add_job_log(job_id, message, level)
        except Exception:  # noqa: BLE001
            logger.warning("Could not write job log for %s: %s", job_id, message, exc_info=True)

    async def set_progress(self, job_id: str, stage: ProgressStage) -> None:
        try:
            await self.update_job(job_id, {"progress_stage": stage})
        except Exception:  # noqa: BLE001
            logger.warning("Could not record progress %s for job %s", stage.value, job_id, exc_info=True)


class SqlJobStore(JobStore):
    """JobStore over SQLAlchemy async sessions. One session per call."""

    def __init__(self, session_maker, storage=None):
        self.session_maker = session_maker
        self.storage = storage

    async def list_jobs(self, flt: JobFilter) -> List[Job]:
        stmt = select(Job)
        if flt.statuses:
            stmt = stmt.where(Job.status.in_(list(flt.statuses)))
        if flt.job_type:
            stmt = stmt.where(Job.job_type == flt.job_type)
        if flt.user_id is not None:
            stmt = stmt.where(Job.user_id == flt.user_id)
        if flt.transcription_id:
            stmt = stmt.where(Job.payload["transcription_id"].as_string() == flt.transcription_id)
        if flt.started_before is not None:
            stmt = stmt.where(Job.started_at.isnot(None), Job.started_at < flt.started_before)
        if flt.exhausted is not None:
            stmt = stmt.where(Job.attempts >= Job.max_attempts if flt.exhausted else Job.attempts < Job.max_attempts)
        stmt = stmt.order_by(Job.created_at.desc() if flt.newest_first else Job.created_at.asc())
        if flt.limit:
            stmt = stmt.limit(flt.limit)
        try:
            async with self.session_maker() as db:
                return list((await db.execute(stmt)).scalars().all())
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list jobs: {e}") from e

    async def get_job(self, job_id: str) -> Optional[Job]:
        try:
            async with self.session_maker() as db:
                return await db.get(Job, job_id)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load job {job_id}: {e}") from e

    async def claim_job(self, job_id: str) -> Optional[Job]:
        now = utcnow()
        stmt = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.status.in_(list(CLAIMABLE_STATUSES)),
                Job.attempts < Job.max_attempts,
            )
            .values(
                status=JobStatus.processing,
                attempts=Job.attempts + 1,
                started_at=now,
                completed_at=None,
                error_message=None,
                progress_stage=ProgressStage.queued,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            async with self.session_maker() as db:
                res = await db.execute(stmt)
                await db.commit()
                if res.rowcount == 0:
                    return None
                return await db.get(Job, job_id)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to claim job {job_id}: {e}") from e

    async def update_job(self, job_id: str, patch: Dict[str, Any], *,
                         expected_status: Optional[JobStatus] = None) -> bool:
        values = dict(patch)
        values.setdefault("updated_at", utcnow())
        stmt = update(Job).where(Job.id == job_id)
        if expected_status is not None:
            stmt = stmt.where(Job.status == expected_status)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)
        try:
            async with self.session_maker() as db:
                res = await db.execute(stmt)
                await db.commit()
                return res.rowcount > 0
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to update job {job_id}: {e}") from e

    async def insert_segments(self, rows: List[dict]) -> None:
        if not rows:
            return
        try:
            async with self.session_maker() as db:
                await db.execute(insert(TranscriptionSegment), rows)
                await db.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to insert segments: {e}") from e

    async def delete_segments(self, transcription_id: str) -> None:
        try:
            async with self.session_maker() as db:
                await db.execute(
                    delete(TranscriptionSegment).where(TranscriptionSegment.transcription_id == transcription_id)
                )
                await db.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to delete segments of {transcription_id}: {e}") from e

    async def update_transcription(self, transcription_id: str, patch: Dict[str, Any]) -> None:
        values = dict(patch)
        values.setdefault("updated_at", utcnow())
        try:
            async with self.session_maker() as db:
                res = await db.execute(
                    update(Transcription)
                    .where(Transcription.id == transcription_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to update transcription {transcription_id}: {e}") from e
        if res.rowcount == 0:
            raise StoreError(f"Transcription {transcription_id} not found")

    async def persist_transcription_result(self, transcription_id: str, rows: List[dict],
                                           patch: Dict[str, Any]) -> None:
        values = dict(patch)
        values.setdefault("updated_at", utcnow())
        try:
            async with self.session_maker() as db:
                async with db.begin():
                    await db.execute(
                        delete(TranscriptionSegment)
                        .where(TranscriptionSegment.transcription_id == transcription_id)
                    )
                    if rows:
                        await db.execute(insert(TranscriptionSegment), rows)
                    res = await db.execute(
                        update(Transcription)
                        .where(Transcription.id == transcription_id)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if res.rowcount == 0:
                        raise StoreError(f"Transcription {transcription_id} not found")
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to persist transcription {transcription_id}: {e}") from e

    async def get_file(self, file_id: str) -> Optional[AudioFile]:
        try:
            async with self.session_maker() as db:
                return await db.get(AudioFile, file_id)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to load file {file_id}: {e}") from e

    async def get_signed_download_url(self, bucket: str, path: str, ttl_seconds: int = 3600) -> str:
        if self.storage is None:
            raise StoreError("No storage client configured")
        return await self.storage.create_signed_url(bucket, path, ttl_seconds)

    async def add_job_log(self, job_id: str, message: str, level: LogLevel = LogLevel.info) -> None:
        try:
            async with self.session_maker() as db:
                db.add(JobLog(job_id=job_id, message=message, level=level))
                await db.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to write job log: {e}") from e


def default_store() -> SqlJobStore:
    from scribe.database import async_session_maker
    from scribe.storage import StorageClient

    return SqlJobStore(async_session_maker, StorageClient())
