import httpx
import pytest

from conftest import AUDIO_BYTES, STORAGE_URL, run
from scribe import storage as storage_module
from scribe.errors import StorageError
from scribe.storage import StorageClient


def _client(handler):
    return StorageClient(STORAGE_URL, "service-key", transport=httpx.MockTransport(handler))


def test_relative_signed_url_is_made_absolute(storage):
    url = run(storage.create_signed_url("audio-files", "/u1/talk.mp3", 60))
    assert url == f"{STORAGE_URL}/object/sign/audio-files/u1/talk.mp3?token=signed"


def test_sign_request_carries_ttl_and_service_key():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = request.read()
        return httpx.Response(200, json={"signedURL": "https://cdn.test/a.mp3?t=1"})

    assert run(_client(handler).create_signed_url("b", "a.mp3", 900)) == "https://cdn.test/a.mp3?t=1"
    assert seen["auth"] == "Bearer service-key"
    assert b'"expiresIn":900' in seen["body"].replace(b" ", b"")


def test_download_writes_file(storage, tmp_path):
    dest = tmp_path / "a.mp3"
    size = run(storage.download_to(f"{STORAGE_URL}/object/sign/audio-files/a.mp3?token=x", dest))
    assert size == len(AUDIO_BYTES)
    assert dest.read_bytes() == AUDIO_BYTES


@pytest.mark.parametrize("status,retryable", [(404, False), (503, True)])
def test_download_errors_are_classified(tmp_path, status, retryable):
    client = _client(lambda request: httpx.Response(status, text="nope"))
    with pytest.raises(StorageError) as excinfo:
        run(client.download_to("http://storage.test/x", tmp_path / "x"))
    assert excinfo.value.retryable is retryable


def test_empty_download_is_permanent(tmp_path):
    client = _client(lambda request: httpx.Response(200, content=b""))
    with pytest.raises(StorageError) as excinfo:
        run(client.download_to("http://storage.test/x", tmp_path / "x"))
    assert excinfo.value.retryable is False


def test_missing_signed_url_in_response():
    client = _client(lambda request: httpx.Response(200, json={}))
    with pytest.raises(StorageError):
        run(client.create_signed_url("b", "a.mp3"))


def test_download_file_io_runs_off_the_event_loop(storage, tmp_path, monkeypatch):
    offloaded = []
    real_run_sync = storage_module.run_sync

    async def recording_run_sync(func, *args, **kwargs):
        offloaded.append(getattr(func, "__name__", repr(func)))
        return await real_run_sync(func, *args, **kwargs)

    monkeypatch.setattr(storage_module, "run_sync", recording_run_sync)
    dest = tmp_path / "b.mp3"

    run(storage.download_to(f"{STORAGE_URL}/object/sign/audio-files/b.mp3?token=x", dest))

    assert offloaded[0] == "open"
    assert "write" in offloaded
    assert offloaded[-1] == "close"
    assert dest.read_bytes() == AUDIO_BYTES
