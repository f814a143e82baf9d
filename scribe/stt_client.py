# scribe/stt_client.py
"""ElevenLabs speech-to-text client (``POST /v1/speech-to-text``)."""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from scribe.errors import TranscriptionServiceError
from scribe.services.retry import with_retry
from scribe.services.segments import Token
from scribe.settings.config import settings

logger = logging.getLogger(__name__)

GRANULARITIES = ("word", "character", "none")


@dataclass
class SttOptions:
    language: Optional[str] = "en"
    diarize: bool = True
    num_speakers: Optional[int] = 2
    timestamps_granularity: str = "word"
    tag_audio_events: bool = True


@dataclass
class SttResult:
    text: str = ""
    language_code: Optional[str] = None
    language_probability: Optional[float] = None
    tokens: List[Token] = field(default_factory=list)


def is_retryable_status(status_code: Optional[int]) -> bool:
    # None means the request never got a response (network error / timeout)
    return status_code is None or status_code == 429 or status_code >= 500


def build_form(options: SttOptions, model_id: str) -> dict:
    data = {
        "model_id": model_id,
        "tag_audio_events": "true" if options.tag_audio_events else "false",
        "diarize": "true" if options.diarize else "false",
    }
    if options.language:
        data["language_code"] = options.language
    if options.timestamps_granularity and options.timestamps_granularity != "none":
        data["timestamps_granularity"] = options.timestamps_granularity
    if options.diarize and options.num_speakers:
        data["num_speakers"] = str(int(options.num_speakers))
    return data


def parse_response(data: dict) -> SttResult:
    if not isinstance(data, dict):
        raise TranscriptionServiceError("Unexpected response shape from speech-to-text service.")
    words = data.get("words") or []
    prob = data.get("language_probability")
    return SttResult(
        text=data.get("text") or "",
        language_code=data.get("language_code"),
        language_probability=float(prob) if prob is not None else None,
        tokens=[Token.from_dict(w) for w in words if isinstance(w, dict)],
    )


class ElevenLabsClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        model_id: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep=None,
    ):
        self.api_key = api_key if api_key is not None else settings.ELEVENLABS_API_KEY
        self.base_url = (base_url or settings.STT_BASE_URL).rstrip("/")
        self.model_id = model_id or settings.STT_MODEL_ID
        self.timeout = timeout if timeout is not None else settings.STT_TIMEOUT_SECONDS
        self.max_retries = max_retries if max_retries is not None else settings.STT_MAX_RETRIES
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.STT_RETRY_BACKOFF_SECONDS
        self._transport = transport
        self._sleep = sleep

    async def transcribe(self, audio: bytes, options: SttOptions, *, filename: str = "audio.mp3",
                         content_type: str = "audio/mpeg") -> SttResult:
        """Send audio bytes and return the parsed token stream.

        Transient failures (network errors, 429, 5xx) are retried with
        exponential backoff; anything else raises TranscriptionServiceError at once.
        """
        if not self.api_key:
            raise TranscriptionServiceError("ELEVENLABS_API_KEY is not configured.")
        if not audio:
            raise TranscriptionServiceError("Audio payload is empty.")

        form = build_form(options, self.model_id)

        async def _once() -> SttResult:
            return await self._post(audio, form, filename, content_type)

        return await with_retry(
            _once,
            retries=self.max_retries,
            backoff_seconds=self.backoff_seconds,
            sleep=self._sleep,
            label="speech-to-text request",
        )

    async def _post(self, audio: bytes, form: dict, filename: str, content_type: str) -> SttResult:
        url = f"{self.base_url}/v1/speech-to-text"
        headers = {"xi-api-key": self.api_key}
        files = {"file": (filename, audio, content_type)}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.post(url, data=form, files=files, headers=headers)
        except httpx.HTTPError as e:
            raise TranscriptionServiceError(
                f"Speech-to-text request failed: {e.__class__.__name__}: {e}",
                status_code=None,
                retryable=True,
            ) from e

        if r.status_code >= 400:
            detail = (r.text or "")[:500]
            raise TranscriptionServiceError(
                f"Speech-to-text service returned {r.status_code}: {detail}",
                status_code=r.status_code,
                retryable=is_retryable_status(r.status_code),
            )
        try:
            data = r.json()
        except ValueError as e:
            raise TranscriptionServiceError("Speech-to-text service returned invalid JSON.") from e

        result = parse_response(data)
        logger.info(
            "Speech-to-text ok: %d tokens, language=%s (p=%s)",
            len(result.tokens), result.language_code, result.language_probability,
        )
        return result
