from __future__ import annotations

import asyncio
import os
import sys
import uuid
from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Optional

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# settings are read at import time
os.environ.setdefault("SECRET", "test-secret-do-not-use-in-prod")
os.environ.setdefault("WORKER_API_KEY", "worker-test-key")
os.environ.setdefault("ELEVENLABS_API_KEY", "el-test-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./scribe-test-unused.db")

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from scribe.database import Base
from scribe.jobs import SqlJobStore
from scribe.models import (
    AudioFile, Job, JobStatus, JobType, Transcription, TranscriptionStatus, User, utcnow,
)
from scribe.services.dispatcher import Dispatcher
from scribe.services.transcription_job import TranscriptionHandler
from scribe.services.worker import Worker
from scribe.storage import StorageClient
from scribe.stt_client import ElevenLabsClient

STORAGE_URL = "http://storage.test/storage/v1"
STT_URL = "http://stt.test"
AUDIO_BYTES = b"ID3\x03\x00fake-mp3-payload" * 8


# ---------------------------------------------------------------------------
# fakes for the two HTTP collaborators
# ---------------------------------------------------------------------------
def storage_handler(request: httpx.Request) -> httpx.Response:
    if request.method == "POST" and "/object/sign/" in request.url.path:
        key = request.url.path.split("/object/sign/", 1)[1]
        return httpx.Response(200, json={"signedURL": f"/object/sign/{key}?token=signed"})
    if request.method == "GET" and "/object/sign/" in request.url.path:
        return httpx.Response(200, content=AUDIO_BYTES)
    return httpx.Response(404, json={"error": "not found"})


def stt_words(*words, speaker: Optional[str] = None, language: str = "en"):
    """Build a speech-to-text JSON body from (text, start, end) triples."""
    tokens = []
    for i, (text, start, end) in enumerate(words):
        if i:
            tokens.append({"text": " ", "type": "spacing", "start": start, "end": start})
        tok = {"text": text, "type": "word", "start": start, "end": end}
        if speaker:
            tok["speaker_id"] = speaker
        tokens.append(tok)
    return {
        "language_code": language,
        "language_probability": 0.98,
        "text": " ".join(w[0] for w in words),
        "words": tokens,
    }


class SttStub:
    """MockTransport handler replaying canned responses; the last one repeats."""

    def __init__(self, *responses: Any):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []
        self.bodies: list[bytes] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(request.read())
        self.requests.append(request)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, httpx.Response):
            return item
        return httpx.Response(200, json=item)

    def form_value(self, name: str, index: int = -1) -> Optional[str]:
        body = self.bodies[index]
        marker = f'name="{name}"'.encode()
        if marker not in body:
            return None
        after = body.split(marker, 1)[1]
        return after.split(b"\r\n\r\n", 1)[1].split(b"\r\n", 1)[0].decode()


async def _no_sleep(_delay: float) -> None:
    return None


# ---------------------------------------------------------------------------
# database
# ---------------------------------------------------------------------------
@pytest.fixture()
def session_maker(tmp_path: Path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'scribe.db'}", poolclass=NullPool)

    async def _create():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(_create())
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    asyncio.run(engine.dispose())


@pytest.fixture()
def storage() -> StorageClient:
    return StorageClient(STORAGE_URL, "service-key", transport=httpx.MockTransport(storage_handler))


@pytest.fixture()
def store(session_maker, storage) -> SqlJobStore:
    return SqlJobStore(session_maker, storage)


@pytest.fixture()
def make_worker(store, storage):
    def _make(stt_stub: SttStub, *, requeue_transient: bool = False, handlers=None) -> Worker:
        stt = ElevenLabsClient(
            "el-test-key",
            base_url=STT_URL,
            model_id="scribe_v1",
            timeout=5,
            max_retries=3,
            backoff_seconds=0,
            transport=httpx.MockTransport(stt_stub),
            sleep=_no_sleep,
        )
        handler = TranscriptionHandler(store, stt, storage, segment_strategy="speaker_pause",
                                       pause_threshold=1.0, max_tokens=15, default_speaker="unknown")
        registry = {JobType.transcription: handler}
        registry.update(handlers or {})
        return Worker(store, Dispatcher(registry), requeue_transient=requeue_transient)

    return _make


# ---------------------------------------------------------------------------
# seed helpers
# ---------------------------------------------------------------------------
async def seed_user(session_maker, email: Optional[str] = None) -> int:
    async with session_maker() as db:
        user = User(email=email or f"{uuid.uuid4().hex[:8]}@example.com", hashed_password="x", is_active=True)
        db.add(user)
        await db.commit()
        return user.id


async def seed_job(
    session_maker,
    *,
    user_id: Optional[int] = None,
    payload: Optional[dict] = None,
    job_type: str = JobType.transcription.value,
    status: JobStatus = JobStatus.pending,
    attempts: int = 0,
    max_attempts: int = 3,
    created_offset: float = 0.0,
    started_minutes_ago: Optional[float] = None,
    with_file: bool = True,
    file_path: str = "uploads/meeting.mp3",
) -> SimpleNamespace:
    """Create user, audio file, pending transcription and a job pointing at them."""
    if user_id is None:
        user_id = await seed_user(session_maker)
    async with session_maker() as db:
        file_id = str(uuid.uuid4())
        if with_file:
            db.add(AudioFile(id=file_id, user_id=user_id, file_name=Path(file_path).name,
                             file_path=file_path, bucket_name="audio-files", mime_type="audio/mpeg"))
            await db.flush()
            transcription = Transcription(file_id=file_id, status=TranscriptionStatus.pending)
            db.add(transcription)
            await db.flush()
            transcription_id = transcription.id
        else:
            transcription_id = str(uuid.uuid4())

        body = {
            "transcription_id": transcription_id,
            "file_id": file_id,
            "language": "en",
            "diarize": False,
            "timestamps_granularity": "word",
            "tag_audio_events": True,
        }
        if payload is not None:
            body = payload
        now = utcnow()
        job = Job(
            job_type=job_type,
            status=status,
            user_id=user_id,
            payload=body,
            attempts=attempts,
            max_attempts=max_attempts,
            created_at=now - timedelta(hours=1) + timedelta(seconds=created_offset),
            started_at=(now - timedelta(minutes=started_minutes_ago)) if started_minutes_ago is not None else None,
        )
        db.add(job)
        await db.commit()
        return SimpleNamespace(user_id=user_id, file_id=file_id, transcription_id=transcription_id, job_id=job.id)


async def load(session_maker, model, pk):
    async with session_maker() as db:
        return await db.get(model, pk)


def run(coro):
    return asyncio.run(coro)
