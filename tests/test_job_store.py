from typing import Any, Dict, List

import pytest

from conftest import load, run, seed_job
from scribe.errors import StoreError
from scribe.jobs import JobFilter, JobStore
from scribe.models import (
    CLAIMABLE_STATUSES, Job, JobStatus, LogLevel, ProgressStage, Transcription, TranscriptionStatus,
)


def test_claim_is_conditional_and_counts_the_attempt(session_maker, store):
    seeded = run(seed_job(session_maker))

    claimed = run(store.claim_job(seeded.job_id))
    assert claimed is not None
    assert claimed.status == JobStatus.processing
    assert claimed.attempts == 1
    assert claimed.started_at is not None
    assert claimed.progress_stage == ProgressStage.queued

    assert run(store.claim_job(seeded.job_id)) is None
    assert run(load(session_maker, Job, seeded.job_id)).attempts == 1


def test_claim_refuses_job_out_of_attempts(session_maker, store):
    seeded = run(seed_job(session_maker, attempts=3, max_attempts=3))
    assert run(store.claim_job(seeded.job_id)) is None


def test_claim_missing_job_returns_none(store):
    assert run(store.claim_job("does-not-exist")) is None


def test_list_jobs_oldest_first_with_limit(session_maker, store):
    newest = run(seed_job(session_maker, created_offset=30))
    oldest = run(seed_job(session_maker, created_offset=0))
    middle = run(seed_job(session_maker, created_offset=10))
    run(seed_job(session_maker, status=JobStatus.completed, created_offset=-5))

    jobs = run(store.list_jobs(JobFilter(statuses=CLAIMABLE_STATUSES)))
    assert [j.id for j in jobs] == [oldest.job_id, middle.job_id, newest.job_id]

    jobs = run(store.list_jobs(JobFilter(statuses=CLAIMABLE_STATUSES, limit=2)))
    assert [j.id for j in jobs] == [oldest.job_id, middle.job_id]


def test_list_jobs_by_transcription_id(session_maker, store):
    a = run(seed_job(session_maker))
    run(seed_job(session_maker))
    jobs = run(store.list_jobs(JobFilter(transcription_id=a.transcription_id)))
    assert [j.id for j in jobs] == [a.job_id]


def test_update_job_with_expected_status(session_maker, store):
    seeded = run(seed_job(session_maker))
    assert run(store.update_job(seeded.job_id, {"error_message": "x"}, expected_status=JobStatus.processing)) is False
    assert run(store.update_job(seeded.job_id, {"priority": 5}, expected_status=JobStatus.pending)) is True
    assert run(load(session_maker, Job, seeded.job_id)).priority == 5


def test_persist_result_replaces_segments_and_completes(session_maker, store):
    seeded = run(seed_job(session_maker))
    tid = seeded.transcription_id
    old = [{"transcription_id": tid, "start_time": 0.0, "end_time": 1.0, "text": "old",
            "speaker_id": "s1", "sequence_number": i} for i in range(3)]
    run(store.insert_segments(old))

    new = [{"transcription_id": tid, "start_time": 0.0, "end_time": 2.0, "text": "fresh",
            "speaker_id": "s1", "sequence_number": 0}]
    run(store.persist_transcription_result(
        tid, new, {"status": TranscriptionStatus.completed, "raw_text": "fresh", "language": "en"}
    ))

    async def _read():
        from sqlalchemy import select
        from scribe.models import TranscriptionSegment
        async with session_maker() as db:
            rows = (await db.execute(
                select(TranscriptionSegment).where(TranscriptionSegment.transcription_id == tid)
            )).scalars().all()
            return [(r.text, r.sequence_number) for r in rows]

    assert run(_read()) == [("fresh", 0)]
    t = run(load(session_maker, Transcription, tid))
    assert t.status == TranscriptionStatus.completed
    assert t.raw_text == "fresh"


def test_persist_result_for_missing_transcription_raises(session_maker, store):
    seeded = run(seed_job(session_maker))
    run(store.insert_segments([{"transcription_id": seeded.transcription_id, "start_time": 0.0,
                                "end_time": 1.0, "text": "keep", "speaker_id": "s1", "sequence_number": 0}]))
    with pytest.raises(StoreError):
        run(store.persist_transcription_result("nope", [], {"status": TranscriptionStatus.completed}))


def test_job_log_and_progress_are_best_effort(session_maker, store):
    seeded = run(seed_job(session_maker))
    run(store.log(seeded.job_id, "hello", LogLevel.warning))
    run(store.set_progress(seeded.job_id, ProgressStage.transcribing))

    async def _logs():
        from sqlalchemy import select
        from scribe.models import JobLog
        async with session_maker() as db:
            return (await db.execute(select(JobLog).where(JobLog.job_id == seeded.job_id))).scalars().all()

    logs = run(_logs())
    assert [(l.message, l.level) for l in logs] == [("hello", LogLevel.warning)]
    assert run(load(session_maker, Job, seeded.job_id)).progress_stage == ProgressStage.transcribing


def test_signed_url_goes_through_storage(store):
    url = run(store.get_signed_download_url("audio-files", "u1/a.mp3", 3600))
    assert url.startswith("http://storage.test/storage/v1/object/sign/audio-files/u1/a.mp3")


class RecordingStore(JobStore):
    """Store without transactions: exercises the ordered write path of the base class."""

    def __init__(self):
        self.calls: List[str] = []

    async def list_jobs(self, flt): return []
    async def get_job(self, job_id): return None
    async def claim_job(self, job_id): return None

    async def update_job(self, job_id, patch, *, expected_status=None):
        return True

    async def insert_segments(self, rows):
        self.calls.append(f"insert:{len(rows)}")

    async def delete_segments(self, transcription_id):
        self.calls.append("delete")

    async def update_transcription(self, transcription_id, patch: Dict[str, Any]):
        self.calls.append(f"update:{patch['status'].value}")

    async def get_file(self, file_id): return None

    async def get_signed_download_url(self, bucket, path, ttl_seconds=3600):
        return ""

    async def add_job_log(self, job_id, message, level=LogLevel.info):
        raise RuntimeError("log sink down")


def test_generic_persist_writes_status_last():
    s = RecordingStore()
    run(s.persist_transcription_result("t1", [{}, {}], {"status": TranscriptionStatus.completed}))
    assert s.calls == ["delete", "insert:2", "update:completed"]


def test_generic_persist_skips_empty_insert():
    s = RecordingStore()
    run(s.persist_transcription_result("t1", [], {"status": TranscriptionStatus.completed}))
    assert s.calls == ["delete", "update:completed"]


def test_failed_log_write_does_not_raise():
    run(RecordingStore().log("j1", "anything"))
