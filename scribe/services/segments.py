"""Group a flat stream of timed speech-to-text tokens into transcript segments.

Two strategies are supported:

* ``speaker_pause``: a new segment opens when the speaker changes, when the gap
  since the previous token's end exceeds the pause threshold, or for an audio
  event (audio events always sit alone in their own segment).
* ``fixed_count``: a segment closes once it holds ``max_tokens`` tokens, no
  matter who is speaking. Audio events are still isolated.

Spacing tokens are dropped. Tokens without any timing are skipped; a token with
only ``start`` or only ``end`` uses that value for both.

A token without a speaker keeps the segment's current speaker. A segment that
has not seen a speaker yet adopts the first one it observes, so only two known,
different speakers force a break.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Optional

SPEAKER_PAUSE = "speaker_pause"
FIXED_COUNT = "fixed_count"
STRATEGIES = (SPEAKER_PAUSE, FIXED_COUNT)

MIN_SEGMENT_SECONDS = 0.001


@dataclass
class Token:
    text: str
    type: str = "word"              # word | spacing | audio_event
    start: Optional[float] = None
    end: Optional[float] = None
    speaker_id: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: dict) -> "Token":
        return cls(
            text=str(raw.get("text") or ""),
            type=str(raw.get("type") or "word"),
            start=_as_float(raw.get("start")),
            end=_as_float(raw.get("end")),
            speaker_id=raw.get("speaker_id") or None,
        )


@dataclass
class Segment:
    start_time: float
    end_time: float
    text: str
    speaker_id: str
    sequence_number: int

    def as_row(self, transcription_id: str) -> dict:
        return {
            "transcription_id": transcription_id,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "text": self.text,
            "speaker_id": self.speaker_id,
            "sequence_number": self.sequence_number,
        }


@dataclass
class _Open:
    start: float
    end: float
    speaker: Optional[str]
    is_event: bool = False
    words: List[str] = field(default_factory=list)


def _as_float(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _timing(tok: Token):
    if tok.start is None and tok.end is None:
        return None
    start = tok.start if tok.start is not None else tok.end
    end = tok.end if tok.end is not None else tok.start
    return start, end


def build_segments(
    tokens: Iterable[Token],
    strategy: str = SPEAKER_PAUSE,
    *,
    pause_threshold: float = 1.0,
    max_tokens: int = 15,
    default_speaker: str = "unknown",
) -> List[Segment]:
    if strategy not in STRATEGIES:
        raise ValueError(f"Unknown segment strategy: {strategy!r}")
    if max_tokens <= 0:
        raise ValueError("max_tokens must be > 0")

    segments: List[Segment] = []
    current: Optional[_Open] = None

    def close():
        nonlocal current
        if current is None:
            return
        start = round(current.start, 3)
        end = round(current.end, 3)
        if end <= start:
            end = round(start + MIN_SEGMENT_SECONDS, 3)
        segments.append(
            Segment(
                start_time=start,
                end_time=end,
                text=" ".join(w for w in current.words if w),
                speaker_id=current.speaker or default_speaker,
                sequence_number=len(segments),
            )
        )
        current = None

    for tok in tokens:
        if tok.type == "spacing":
            continue
        timing = _timing(tok)
        if timing is None:
            continue
        start, end = timing
        text = tok.text.strip()
        is_event = tok.type == "audio_event"

        if current is not None:
            if is_event or current.is_event:
                close()
            elif strategy == SPEAKER_PAUSE:
                speaker_changed = (
                    tok.speaker_id is not None
                    and current.speaker is not None
                    and tok.speaker_id != current.speaker
                )
                if speaker_changed or (start - current.end) > pause_threshold:
                    close()
            elif len(current.words) >= max_tokens:
                close()

        if current is None:
            current = _Open(start=start, end=end, speaker=tok.speaker_id, is_event=is_event)
        else:
            current.end = max(current.end, end)
            if current.speaker is None and tok.speaker_id is not None:
                current.speaker = tok.speaker_id
        current.words.append(text)

    close()
    return segments


def count_words(tokens: Iterable[Token]) -> int:
    return sum(1 for t in tokens if t.type == "word")


def compute_duration(tokens: Iterable[Token]) -> float:
    """End time of the last token that carries timing, or 0."""
    duration = 0.0
    for t in tokens:
        timing = _timing(t)
        if timing is not None:
            duration = timing[1]
    return duration
