# scribe/services/transcription_job.py
"""Handler for ``transcription`` jobs.

One run: mark the transcription as processing, fetch the audio through a
signed URL into a temp dir, send it to the speech-to-text service, group the
tokens into segments and persist them, then report a result dict back to the
worker. Temp files are removed on every exit path.
"""
import logging
import mimetypes
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from scribe.background import run_sync
from scribe.errors import JobPayloadError, StorageError, is_retryable
from scribe.jobs import JobStore
from scribe.models import Job, ProgressStage, TranscriptionStatus
from scribe.schemas import TranscriptionJobPayload
from scribe.services.segments import build_segments, compute_duration, count_words
from scribe.settings.config import settings
from scribe.stt_client import SttOptions

logger = logging.getLogger(__name__)


@dataclass
class JobOutcome:
    success: bool
    result: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    retryable: bool = False

    @classmethod
    def failure(cls, error: str, *, retryable: bool = False) -> "JobOutcome":
        return cls(success=False, result={"success": False, "error": error}, error=error, retryable=retryable)


def has_ffmpeg() -> bool:
    return shutil.which("ffmpeg") is not None


def convert_to_mp3(src: Path) -> Optional[Path]:
    """ffmpeg transcode to 44.1 kHz stereo 192k mp3. None when ffmpeg is missing or fails."""
    if not has_ffmpeg():
        return None
    dst = src.with_suffix(".mp3")
    cmd = ["ffmpeg", "-y", "-i", str(src), "-vn", "-ar", "44100", "-ac", "2", "-b:a", "192k", str(dst)]
    try:
        subprocess.run(cmd, check=True, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
    except (OSError, subprocess.CalledProcessError) as e:
        logger.warning("ffmpeg conversion failed for %s: %s", src.name, e)
        return None
    return dst


def parse_payload(job: Job) -> TranscriptionJobPayload:
    try:
        return TranscriptionJobPayload.model_validate(job.payload or {})
    except ValidationError as e:
        raise JobPayloadError(f"Invalid transcription payload: {e.errors()[0].get('msg', e)}") from e


class TranscriptionHandler:
    def __init__(
        self,
        store: JobStore,
        stt_client,
        downloader,
        *,
        segment_strategy: Optional[str] = None,
        pause_threshold: Optional[float] = None,
        max_tokens: Optional[int] = None,
        default_speaker: Optional[str] = None,
        signed_url_ttl: Optional[int] = None,
        temp_dir: Optional[str] = None,
        convert_m4a: bool = True,
    ):
        self.store = store
        self.stt = stt_client
        self.downloader = downloader
        self.segment_strategy = segment_strategy or settings.SEGMENT_STRATEGY
        self.pause_threshold = pause_threshold if pause_threshold is not None else settings.SEGMENT_PAUSE_SECONDS
        self.max_tokens = max_tokens or settings.SEGMENT_MAX_TOKENS
        self.default_speaker = default_speaker or settings.DEFAULT_SPEAKER_LABEL
        self.signed_url_ttl = signed_url_ttl or settings.SIGNED_URL_TTL_SECONDS
        self.temp_dir = temp_dir if temp_dir is not None else settings.TEMP_DIR
        self.convert_m4a = convert_m4a

    async def __call__(self, job: Job) -> JobOutcome:
        try:
            payload = parse_payload(job)
        except JobPayloadError as e:
            tid = (job.payload or {}).get("transcription_id")
            if isinstance(tid, str) and tid:
                await self._mark_failed(job, tid, str(e))
            return JobOutcome.failure(str(e))

        tid = payload.transcription_id
        try:
            await self.store.update_transcription(
                tid,
                {"status": TranscriptionStatus.processing, "error_message": None,
                 "model_id": getattr(self.stt, "model_id", None)},
            )
        except Exception as e:  # noqa: BLE001
            logger.error("Job %s: could not mark transcription %s processing: %s", job.id, tid, e)
            return JobOutcome.failure(f"Failed to update transcription status: {e}", retryable=is_retryable(e))

        workdir: Optional[Path] = None
        try:
            workdir = Path(await run_sync(tempfile.mkdtemp, prefix="scribe-", dir=self.temp_dir))
            return await self._run(job, payload, workdir)
        except Exception as e:  # noqa: BLE001
            msg = str(e) or e.__class__.__name__
            logger.exception("Job %s: transcription %s failed", job.id, tid)
            await self._mark_failed(job, tid, msg)
            return JobOutcome.failure(msg, retryable=is_retryable(e))
        finally:
            if workdir is not None:
                await run_sync(shutil.rmtree, workdir, ignore_errors=True)

    async def _mark_failed(self, job: Job, tid: str, msg: str) -> None:
        try:
            await self.store.update_transcription(tid, {"status": TranscriptionStatus.failed, "error_message": msg})
        except Exception:  # noqa: BLE001
            logger.warning("Job %s: could not mark transcription %s failed", job.id, tid, exc_info=True)

    async def _run(self, job: Job, payload: TranscriptionJobPayload, workdir: Path) -> JobOutcome:
        await self.store.set_progress(job.id, ProgressStage.downloading)
        audio_file = await self.store.get_file(payload.file_id)
        if audio_file is None:
            raise JobPayloadError(f"Audio file {payload.file_id} not found")

        storage_path = audio_file.normalized_path or audio_file.file_path
        if payload.file_url and payload.file_url.startswith(("http://", "https://")):
            url = payload.file_url
        else:
            bucket = audio_file.bucket_name or settings.STORAGE_DEFAULT_BUCKET
            url = await self.store.get_signed_download_url(
                bucket, payload.file_url or storage_path, self.signed_url_ttl
            )

        name = Path(storage_path).name or f"{audio_file.id}.mp3"
        local = workdir / name
        size = await self.downloader.download_to(url, local)
        await self.store.log(job.id, f"Downloaded {name} ({size} bytes)")

        if self.convert_m4a and local.suffix.lower() == ".m4a":
            converted = await run_sync(convert_to_mp3, local)
            if converted is not None:
                local = converted
                await self.store.log(job.id, "Converted m4a input to mp3")

        audio = await run_sync(local.read_bytes)
        if not audio:
            raise StorageError(f"Audio file {name} is empty", retryable=False)
        content_type = mimetypes.guess_type(local.name)[0] or audio_file.mime_type or "application/octet-stream"

        await self.store.set_progress(job.id, ProgressStage.transcribing)
        options = SttOptions(
            language=payload.language,
            diarize=payload.diarize,
            num_speakers=payload.num_speakers if payload.diarize else None,
            timestamps_granularity=payload.timestamps_granularity,
            tag_audio_events=payload.tag_audio_events,
        )
        stt = await self.stt.transcribe(audio, options, filename=local.name, content_type=content_type)

        if payload.diarize:
            await self.store.set_progress(job.id, ProgressStage.diarizing)
        segments = build_segments(
            stt.tokens,
            self.segment_strategy,
            pause_threshold=self.pause_threshold,
            max_tokens=self.max_tokens,
            default_speaker=self.default_speaker,
        )

        await self.store.set_progress(job.id, ProgressStage.finalizing)
        rows = [s.as_row(payload.transcription_id) for s in segments]
        await self.store.persist_transcription_result(
            payload.transcription_id,
            rows,
            {
                "status": TranscriptionStatus.completed,
                "language": stt.language_code or payload.language,
                "language_probability": stt.language_probability,
                "raw_text": stt.text,
                "error_message": None,
            },
        )

        duration = compute_duration(stt.tokens)
        word_count = count_words(stt.tokens)
        await self.store.log(
            job.id, f"Stored {len(rows)} segments, {word_count} words, {duration:.2f}s of audio"
        )
        return JobOutcome(
            success=True,
            result={
                "success": True,
                "transcription_id": payload.transcription_id,
                "file_id": payload.file_id,
                "duration": duration,
                "word_count": word_count,
                "segment_count": len(rows),
            },
        )
