import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Boolean, ForeignKey, Text, DateTime, func,
    UniqueConstraint, Index, JSON, Float
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.mutable import MutableDict
from sqlalchemy.orm import relationship

from .database import Base

# JSONB on Postgres, plain JSON elsewhere (sqlite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_uuid() -> str:
    return str(uuid.uuid4())


class JobType(str, enum.Enum):
    transcription = "transcription"


class JobStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    retrying = "retrying"


CLAIMABLE_STATUSES = (JobStatus.pending, JobStatus.retrying)
TERMINAL_STATUSES = (JobStatus.completed, JobStatus.failed)


class ProgressStage(str, enum.Enum):
    queued = "queued"
    downloading = "downloading"
    transcribing = "transcribing"
    diarizing = "diarizing"
    finalizing = "finalizing"
    done = "done"


class TranscriptionStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class LogLevel(str, enum.Enum):
    info = "info"
    warning = "warning"
    error = "error"


# ---------------------------
# USER MODEL
# ---------------------------
class User(Base):
    __tablename__ = "user"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(320), unique=True, index=True, nullable=False)
    username = Column(String, index=True)
    hashed_password = Column(String(1024), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    is_superuser = Column(Boolean, default=False, nullable=False)
    is_verified = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    audio_files = relationship("AudioFile", back_populates="user", passive_deletes=True)


# ---------------------------
# AUDIO FILES (written by the upload flow, read here)
# ---------------------------
class AudioFile(Base):
    __tablename__ = "audio_files"

    id = Column(String(36), primary_key=True, default=new_uuid)
    user_id = Column(Integer, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True)
    file_name = Column(String, nullable=False)
    file_path = Column(String, nullable=False)          # object key inside bucket_name
    normalized_path = Column(String, nullable=True)     # preferred when present
    bucket_name = Column(String, nullable=False, default="audio-files")
    mime_type = Column(String, nullable=True)
    size_bytes = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    user = relationship("User", back_populates="audio_files")
    transcription = relationship(
        "Transcription",
        back_populates="file",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


# ---------------------------
# TRANSCRIPTIONS
# ---------------------------
class Transcription(Base):
    __tablename__ = "transcriptions"

    id = Column(String(36), primary_key=True, default=new_uuid)
    file_id = Column(String(36), ForeignKey("audio_files.id", ondelete="CASCADE"), nullable=False, unique=True)
    status = Column(
        SAEnum(TranscriptionStatus, name="transcription_status"),
        default=TranscriptionStatus.pending,
        nullable=False,
    )
    language = Column(String(16), nullable=True)
    language_probability = Column(Float, nullable=True)
    raw_text = Column(Text, nullable=True)
    model_id = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now())

    file = relationship("AudioFile", back_populates="transcription")
    segments = relationship(
        "TranscriptionSegment",
        back_populates="transcription",
        order_by="TranscriptionSegment.sequence_number",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class TranscriptionSegment(Base):
    __tablename__ = "transcription_segments"
    __table_args__ = (
        UniqueConstraint("transcription_id", "sequence_number", name="uq_segment_sequence"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    transcription_id = Column(
        String(36), ForeignKey("transcriptions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    start_time = Column(Float, nullable=False)
    end_time = Column(Float, nullable=False)
    text = Column(Text, nullable=False, default="")
    original_text = Column(Text, nullable=True)   # snapshot taken on first edit
    speaker_id = Column(String(64), nullable=True)
    sequence_number = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now())

    transcription = relationship("Transcription", back_populates="segments")


# ---------------------------
# JOB QUEUE
# ---------------------------
class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_status_created", "status", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=new_uuid)
    job_type = Column(String(32), nullable=False, index=True)  # JobType value; open for new types
    status = Column(SAEnum(JobStatus, name="job_status"), default=JobStatus.pending, nullable=False)
    priority = Column(Integer, nullable=False, default=0)
    payload = Column(MutableDict.as_mutable(JSONType), nullable=False, default=dict)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    progress_stage = Column(
        SAEnum(ProgressStage, name="job_progress_stage"), nullable=False, default=ProgressStage.queued
    )
    result = Column(JSONType, nullable=True)
    error_message = Column(Text, nullable=True)
    user_id = Column(Integer, ForeignKey("user.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    logs = relationship(
        "JobLog",
        back_populates="job",
        order_by="JobLog.id",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class JobLog(Base):
    __tablename__ = "job_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    message = Column(Text, nullable=False)
    level = Column(SAEnum(LogLevel, name="job_log_level"), nullable=False, default=LogLevel.info)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    job = relationship("Job", back_populates="logs")
