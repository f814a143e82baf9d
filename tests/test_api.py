import uuid
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from conftest import SttStub, load, run, seed_job, seed_user, stt_words
from scribe.database import get_db
from scribe.main import app
from scribe.models import AudioFile, Job, JobStatus, TranscriptionSegment
from scribe.services.worker import get_worker
from scribe.utils import require_authenticated_user

WORKER_AUTH = {"Authorization": "Bearer worker-test-key"}


@pytest.fixture()
def user_id(session_maker):
    return run(seed_user(session_maker, "owner@example.com"))


@pytest.fixture()
def client(session_maker, make_worker, user_id):
    async def _db():
        async with session_maker() as session:
            yield session

    worker = make_worker(SttStub(stt_words(("hello", 0.0, 0.5), ("there", 0.6, 1.0))))
    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[require_authenticated_user] = lambda: SimpleNamespace(id=user_id)
    app.dependency_overrides[get_worker] = lambda: worker
    yield TestClient(app)
    app.dependency_overrides.clear()


async def _add_file(session_maker, user_id, path="uploads/talk.m4a"):
    async with session_maker() as db:
        f = AudioFile(id=str(uuid.uuid4()), user_id=user_id, file_name=path.rsplit("/", 1)[-1],
                      file_path=path, bucket_name="audio-files", mime_type="audio/mp4")
        db.add(f)
        await db.commit()
        return f.id


async def _add_segments(session_maker, transcription_id, *rows):
    async with session_maker() as db:
        for i, (start, end, text) in enumerate(rows):
            db.add(TranscriptionSegment(transcription_id=transcription_id, start_time=start, end_time=end,
                                        text=text, speaker_id="speaker_0", sequence_number=i))
        await db.commit()
        result = await db.execute(
            select(TranscriptionSegment.id)
            .where(TranscriptionSegment.transcription_id == transcription_id)
            .order_by(TranscriptionSegment.sequence_number)
        )
        return result.scalars().all()


# ---------------------------------------------------------------------------
# worker-key endpoints
# ---------------------------------------------------------------------------
def test_worker_endpoint_requires_key(client):
    r = client.post("/jobs/worker")
    assert r.status_code == 401
    assert r.json()["code"] == "unauthorized"

    r = client.post("/jobs/worker", headers={"Authorization": "Bearer nope"})
    assert r.status_code == 401
    assert r.json() == {"error": "Invalid worker key", "code": "unauthorized"}


def test_worker_endpoint_runs_a_batch(client, session_maker, user_id):
    seeded = run(seed_job(session_maker, user_id=user_id))

    r = client.post("/jobs/worker?maxJobs=5", headers=WORKER_AUTH)

    assert r.status_code == 200
    body = r.json()
    assert body["processed"] == 1
    assert body["results"][0]["job_id"] == seeded.job_id
    assert body["results"][0]["status"] == "completed"
    assert run(load(session_maker, Job, seeded.job_id)).status == JobStatus.completed


def test_worker_endpoint_rejects_bad_batch_size(client):
    r = client.post("/jobs/worker?maxJobs=0", headers=WORKER_AUTH)
    assert r.status_code == 422
    assert r.json()["code"] == "invalid_request"


def test_worker_health(client):
    r = client.get("/jobs/worker", headers=WORKER_AUTH)
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["continuousRunning"] is False
    assert body["lastProcessed"] == 0


def test_reset_stuck_reports_in_camel_case(client, session_maker, user_id):
    run(seed_job(session_maker, user_id=user_id, status=JobStatus.processing, attempts=1, started_minutes_ago=50))

    r = client.post("/jobs/reset-stuck", json={"maxTimeMinutes": 30}, headers=WORKER_AUTH)

    assert r.status_code == 200
    assert r.json() == {"resetCount": 1, "totalFound": 1, "failedResets": 0}


def test_reset_stuck_without_body_uses_default_threshold(client, session_maker, user_id):
    run(seed_job(session_maker, user_id=user_id, status=JobStatus.processing, attempts=1, started_minutes_ago=10))
    r = client.post("/jobs/reset-stuck", headers=WORKER_AUTH)
    assert r.json() == {"resetCount": 0, "totalFound": 0, "failedResets": 0}


def test_manual_job_reset(client, session_maker, user_id):
    seeded = run(seed_job(session_maker, user_id=user_id, status=JobStatus.failed, attempts=3))

    r = client.post(f"/jobs/{seeded.job_id}/reset", headers=WORKER_AUTH)
    assert r.status_code == 200
    assert r.json()["job"]["status"] == "pending"
    assert r.json()["job"]["attempts"] == 0

    r = client.post("/jobs/missing/reset", headers=WORKER_AUTH)
    assert r.status_code == 404
    assert r.json()["code"] == "not_found"


# ---------------------------------------------------------------------------
# session endpoints: jobs
# ---------------------------------------------------------------------------
def test_list_jobs_is_scoped_and_filterable(client, session_maker, user_id):
    mine = run(seed_job(session_maker, user_id=user_id))
    done = run(seed_job(session_maker, user_id=user_id, status=JobStatus.completed, created_offset=10))
    run(seed_job(session_maker))  # someone else's

    r = client.get("/jobs")
    assert r.status_code == 200
    assert [j["id"] for j in r.json()] == [done.job_id, mine.job_id]

    r = client.get("/jobs", params={"status": "completed"})
    assert [j["id"] for j in r.json()] == [done.job_id]

    r = client.get("/jobs", params={"transcription_id": mine.transcription_id})
    assert [j["id"] for j in r.json()] == [mine.job_id]


def test_list_jobs_rejects_unknown_status(client):
    r = client.get("/jobs", params={"status": "exploded"})
    assert r.status_code == 400
    assert r.json() == {"error": "Unknown job status: exploded", "code": "invalid_request"}


def test_job_detail_includes_logs(client, session_maker, user_id):
    seeded = run(seed_job(session_maker, user_id=user_id))
    client.post("/jobs/worker", headers=WORKER_AUTH)

    r = client.get(f"/jobs/{seeded.job_id}")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "completed"
    assert body["result"]["word_count"] == 2
    assert body["logs"][0]["message"].startswith("Started attempt 1")
    assert body["logs"][-1]["message"] == "Job completed"


def test_job_detail_of_other_user_is_hidden(client, session_maker):
    other = run(seed_job(session_maker))
    r = client.get(f"/jobs/{other.job_id}")
    assert r.status_code == 404


def test_unknown_route_uses_error_body(client):
    r = client.get("/nowhere")
    assert r.status_code == 404
    assert r.json()["code"] == "not_found"


# ---------------------------------------------------------------------------
# session endpoints: transcriptions
# ---------------------------------------------------------------------------
def test_request_transcription_enqueues_once(client, session_maker, user_id):
    file_id = run(_add_file(session_maker, user_id))

    r = client.post(f"/files/{file_id}/transcription", json={"language": "fr", "diarize": False})
    assert r.status_code == 201
    body = r.json()
    assert body["status"] == "pending"

    job = run(load(session_maker, Job, body["job_id"]))
    assert job.job_type == "transcription"
    assert job.payload["transcription_id"] == body["transcription_id"]
    assert job.payload["file_url"] == "uploads/talk.m4a"
    assert job.payload["language"] == "fr"
    assert job.payload["num_speakers"] is None

    r = client.post(f"/files/{file_id}/transcription")
    assert r.status_code == 409
    assert r.json()["code"] == "conflict"


def test_request_transcription_for_foreign_file(client, session_maker):
    stranger = run(seed_user(session_maker))
    file_id = run(_add_file(session_maker, stranger))
    assert client.post(f"/files/{file_id}/transcription").status_code == 404


def test_enqueued_transcription_is_processed_end_to_end(client, session_maker, user_id):
    file_id = run(_add_file(session_maker, user_id, "uploads/talk.mp3"))
    client.post(f"/files/{file_id}/transcription", json={"diarize": False})

    r = client.post("/jobs/worker", headers=WORKER_AUTH)
    assert r.json()["results"][0]["status"] == "completed"

    r = client.get(f"/files/{file_id}/transcription")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "completed"
    assert [s["text"] for s in body["segments"]] == ["hello there"]


def test_segment_edit_keeps_original_text(client, session_maker, user_id):
    seeded = run(seed_job(session_maker, user_id=user_id))
    seg_id, _ = run(_add_segments(session_maker, seeded.transcription_id, (0.0, 1.0, "helo"), (1.0, 2.0, "world")))
    url = f"/files/{seeded.file_id}/transcription/segments/{seg_id}"

    r = client.patch(url, json={"text": "hello"})
    assert r.status_code == 200
    assert (r.json()["text"], r.json()["original_text"]) == ("hello", "helo")

    r = client.patch(url, json={"text": "hello!"})
    assert r.json()["original_text"] == "helo"

    r = client.patch(url, json={"start_time": 2.0, "end_time": 1.5})
    assert r.status_code == 400

    r = client.patch(url, json={})
    assert r.status_code == 400
    assert r.json()["error"] == "At least one valid update field is required"

    assert client.patch(f"/files/{seeded.file_id}/transcription/segments/999999", json={"text": "x"}).status_code == 404


def test_export_txt_and_srt(client, session_maker, user_id):
    seeded = run(seed_job(session_maker, user_id=user_id))
    run(_add_segments(session_maker, seeded.transcription_id, (0.0, 1.25, "Hello"), (61.5, 3725.004, "there")))
    base = f"/files/{seeded.file_id}/transcription/export"

    r = client.get(base, params={"format": "txt"})
    assert r.status_code == 200
    assert r.text == "Hello there"
    assert r.headers["content-type"].startswith("text/plain")
    assert "attachment" in r.headers["content-disposition"]

    r = client.get(base, params={"format": "srt"})
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("application/x-subrip")
    assert r.text == (
        "1\n00:00:00,000 --> 00:00:01,250\nHello\n"
        "\n"
        "2\n00:01:01,500 --> 01:02:05,004\nthere\n"
    )


def test_export_without_segments(client, session_maker, user_id):
    seeded = run(seed_job(session_maker, user_id=user_id))
    r = client.get(f"/files/{seeded.file_id}/transcription/export")
    assert r.status_code == 404
    assert r.json()["error"] == "No transcription data available for export"


def test_export_rejects_unknown_format(client, session_maker, user_id):
    seeded = run(seed_job(session_maker, user_id=user_id))
    r = client.get(f"/files/{seeded.file_id}/transcription/export", params={"format": "docx"})
    assert r.status_code == 422
