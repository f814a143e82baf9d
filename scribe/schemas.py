from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _enum_value(v):
    return getattr(v, "value", v)


# =========================
# JOB PAYLOADS
# =========================
class TranscriptionJobPayload(BaseModel):
    transcription_id: str
    file_id: str
    file_url: Optional[str] = None
    language: Optional[str] = "en"
    diarize: bool = True
    num_speakers: Optional[int] = Field(default=2, ge=1, le=32)
    timestamps_granularity: Literal["word", "character", "none"] = "word"
    tag_audio_events: bool = True

    model_config = ConfigDict(extra="ignore")


# =========================
# JOB SCHEMAS
# =========================
class JobLogRead(BaseModel):
    id: int
    message: str
    level: str
    created_at: Optional[datetime] = None

    @field_validator("level", mode="before")
    @classmethod
    def level_value(cls, v):
        return _enum_value(v)

    class Config:
        from_attributes = True

class JobRead(BaseModel):
    id: str
    job_type: str
    status: str
    priority: int = 0
    payload: Dict[str, Any] = {}
    attempts: int
    max_attempts: int
    progress_stage: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("job_type", "status", "progress_stage", mode="before")
    @classmethod
    def enum_values(cls, v):
        return _enum_value(v)

    class Config:
        from_attributes = True

class JobDetail(JobRead):
    logs: List[JobLogRead] = []

class JobResetResponse(BaseModel):
    message: str
    job: JobRead


# =========================
# WORKER / RECLAIMER
# =========================
class WorkerReport(BaseModel):
    processed: int
    results: List[Dict[str, Any]] = []

class WorkerHealth(BaseModel):
    status: str = "ok"
    continuous_running: bool = Field(default=False, serialization_alias="continuousRunning")
    passes: int = 0
    last_run_at: Optional[datetime] = Field(default=None, serialization_alias="lastRunAt")
    last_processed: int = Field(default=0, serialization_alias="lastProcessed")

class ResetStuckRequest(BaseModel):
    max_time_minutes: int = Field(default=30, ge=1, alias="maxTimeMinutes")

    model_config = ConfigDict(populate_by_name=True)

class ResetStuckResponse(BaseModel):
    reset_count: int = Field(serialization_alias="resetCount")
    total_found: int = Field(serialization_alias="totalFound")
    failed_resets: int = Field(serialization_alias="failedResets")


# =========================
# TRANSCRIPTION SCHEMAS
# =========================
class TranscriptionRequest(BaseModel):
    language: Optional[str] = "en"
    diarize: bool = True
    num_speakers: Optional[int] = Field(default=2, ge=1, le=32)
    timestamps_granularity: Literal["word", "character", "none"] = "word"
    tag_audio_events: bool = True

class EnqueuedTranscription(BaseModel):
    transcription_id: str
    job_id: str
    status: str

class SegmentRead(BaseModel):
    id: int
    start_time: float
    end_time: float
    text: str
    original_text: Optional[str] = None
    speaker_id: Optional[str] = None
    sequence_number: int

    class Config:
        from_attributes = True

class SegmentUpdate(BaseModel):
    text: Optional[str] = None
    speaker_id: Optional[str] = None
    start_time: Optional[float] = Field(default=None, ge=0)
    end_time: Optional[float] = Field(default=None, ge=0)

    @field_validator("text")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

class TranscriptionRead(BaseModel):
    id: str
    file_id: str
    status: str
    language: Optional[str] = None
    language_probability: Optional[float] = None
    raw_text: Optional[str] = None
    model_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    segments: List[SegmentRead] = []

    @field_validator("status", mode="before")
    @classmethod
    def status_value(cls, v):
        return _enum_value(v)

    class Config:
        from_attributes = True
