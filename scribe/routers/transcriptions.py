from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Body, Depends, Query, status
from fastapi.responses import Response
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from scribe.database import get_db
from scribe.errors import DuplicateTranscriptionError, conflict, invalid_request, not_found
from scribe.models import TranscriptionSegment
from scribe.schemas import (
    EnqueuedTranscription, SegmentRead, SegmentUpdate, TranscriptionRead, TranscriptionRequest,
)
from scribe.services.transcripts import (
    EXPORT_FORMATS, enqueue_transcription, export_segments, get_owned_file, get_transcription_for_file,
    update_segment,
)
from scribe.utils import require_authenticated_user

router = APIRouter(prefix="/files/{file_id}/transcription", tags=["transcriptions"])


async def _owned_file_or_404(db: AsyncSession, file_id: str, user):
    audio_file = await get_owned_file(db, file_id, user.id)
    if not audio_file:
        raise not_found("File not found")
    return audio_file


@router.post("", response_model=EnqueuedTranscription, status_code=status.HTTP_201_CREATED)
async def request_transcription(
    file_id: str,
    options: Optional[TranscriptionRequest] = Body(default=None),
    user=Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    audio_file = await _owned_file_or_404(db, file_id, user)
    try:
        transcription, job = await enqueue_transcription(db, audio_file, user.id, options)
    except DuplicateTranscriptionError as e:
        raise conflict(str(e)) from e
    return EnqueuedTranscription(transcription_id=transcription.id, job_id=job.id, status=job.status.value)


@router.get("", response_model=TranscriptionRead)
async def read_transcription(
    file_id: str,
    user=Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    await _owned_file_or_404(db, file_id, user)
    transcription = await get_transcription_for_file(db, file_id)
    if not transcription:
        raise not_found("Transcription not found")
    return transcription


@router.patch("/segments/{segment_id}", response_model=SegmentRead)
async def edit_segment(
    file_id: str,
    segment_id: int,
    changes: SegmentUpdate,
    user=Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    await _owned_file_or_404(db, file_id, user)
    if not changes.model_dump(exclude_unset=True, exclude_none=True):
        raise invalid_request("At least one valid update field is required")
    transcription = await get_transcription_for_file(db, file_id)
    if not transcription:
        raise not_found("Transcription not found")
    segment = await db.scalar(
        select(TranscriptionSegment).where(
            TranscriptionSegment.id == segment_id,
            TranscriptionSegment.transcription_id == transcription.id,
        )
    )
    if not segment:
        raise not_found("Segment not found")
    try:
        return await update_segment(db, segment, changes)
    except ValueError as e:
        raise invalid_request(str(e)) from e


@router.get("/export")
async def export_transcription(
    file_id: str,
    format: Literal["txt", "srt"] = Query(default="txt"),
    user=Depends(require_authenticated_user),
    db: AsyncSession = Depends(get_db),
):
    await _owned_file_or_404(db, file_id, user)
    transcription = await get_transcription_for_file(db, file_id)
    if not transcription or not transcription.segments:
        raise not_found("No transcription data available for export")
    body = export_segments(transcription.segments, format)
    return Response(
        content=body,
        media_type=EXPORT_FORMATS[format],
        headers={"Content-Disposition": f'attachment; filename="transcription-{file_id}.{format}"'},
    )


__all__ = ["router"]
