# scribe/services/transcripts.py
"""Transcription requests, segment edits and exports (session-facing side of the queue)."""
import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from scribe.errors import DuplicateTranscriptionError
from scribe.models import (
    AudioFile, Job, JobLog, JobStatus, JobType, LogLevel, Transcription, TranscriptionSegment,
    TranscriptionStatus,
)
from scribe.schemas import SegmentUpdate, TranscriptionRequest

logger = logging.getLogger(__name__)

EXPORT_FORMATS = {
    "txt": "text/plain; charset=utf-8",
    "srt": "application/x-subrip",
}


async def enqueue_transcription(
    db: AsyncSession,
    audio_file: AudioFile,
    user_id: int,
    options: Optional[TranscriptionRequest] = None,
) -> tuple[Transcription, Job]:
    """Create a pending transcription for ``audio_file`` plus the job that will fill it."""
    options = options or TranscriptionRequest()
    existing = await db.scalar(select(Transcription.id).where(Transcription.file_id == audio_file.id))
    if existing:
        raise DuplicateTranscriptionError(f"File {audio_file.id} already has a transcription")

    transcription = Transcription(file_id=audio_file.id, status=TranscriptionStatus.pending)
    db.add(transcription)
    await db.flush()

    job = Job(
        job_type=JobType.transcription.value,
        status=JobStatus.pending,
        user_id=user_id,
        payload={
            "transcription_id": transcription.id,
            "file_id": audio_file.id,
            "file_url": audio_file.normalized_path or audio_file.file_path,
            "language": options.language,
            "diarize": options.diarize,
            "num_speakers": options.num_speakers if options.diarize else None,
            "timestamps_granularity": options.timestamps_granularity,
            "tag_audio_events": options.tag_audio_events,
        },
    )
    db.add(job)
    await db.flush()
    db.add(JobLog(job_id=job.id, message="Transcription job queued", level=LogLevel.info))
    await db.commit()
    logger.info("Queued transcription %s (job %s) for file %s", transcription.id, job.id, audio_file.id)
    return transcription, job


async def get_owned_file(db: AsyncSession, file_id: str, user_id: int) -> Optional[AudioFile]:
    return await db.scalar(
        select(AudioFile).where(AudioFile.id == file_id, AudioFile.user_id == user_id)
    )


async def get_transcription_for_file(db: AsyncSession, file_id: str) -> Optional[Transcription]:
    return await db.scalar(
        select(Transcription)
        .where(Transcription.file_id == file_id)
        .options(selectinload(Transcription.segments))
    )


async def update_segment(db: AsyncSession, segment: TranscriptionSegment, changes: SegmentUpdate) -> TranscriptionSegment:
    data = changes.model_dump(exclude_unset=True, exclude_none=True)
    start = data.get("start_time", segment.start_time)
    end = data.get("end_time", segment.end_time)
    if end <= start:
        raise ValueError("end_time must be greater than start_time")

    if "text" in data and data["text"] != segment.text and segment.original_text is None:
        segment.original_text = segment.text
    for key, value in data.items():
        setattr(segment, key, value)
    await db.commit()
    await db.refresh(segment)
    return segment


def format_srt_time(seconds: float) -> str:
    total_ms = int(round(max(seconds, 0.0) * 1000))
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, ms = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{ms:03d}"


def export_segments(segments: List[TranscriptionSegment], fmt: str = "txt") -> str:
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unsupported export format: {fmt}")
    if fmt == "txt":
        return " ".join(s.text for s in segments if s.text)
    blocks = []
    for i, s in enumerate(segments, start=1):
        blocks.append(f"{i}\n{format_srt_time(s.start_time)} --> {format_srt_time(s.end_time)}\n{s.text}\n")
    return "\n".join(blocks)
