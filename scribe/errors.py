"""Exception types shared by the job system and the HTTP surface."""
from __future__ import annotations

from typing import Optional

from fastapi import HTTPException, status


class StoreError(RuntimeError):
    """A read or write against the job store failed."""

    retryable = True


class StorageError(RuntimeError):
    """Signed URL creation or object download failed."""

    def __init__(self, message: str, *, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class JobPayloadError(ValueError):
    """Job payload is missing fields or has the wrong shape. Never retried."""

    retryable = False


class TranscriptionServiceError(RuntimeError):
    """The speech-to-text service rejected or failed a request.

    ``status_code`` is None for transport-level failures (DNS, reset, timeout).
    """

    def __init__(self, message: str, *, status_code: Optional[int] = None, retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


# ---------------------------------------------------------------------------
# HTTP errors
# ---------------------------------------------------------------------------
CLIENT_CODES = {"invalid_request", "unauthorized", "forbidden", "not_found", "conflict"}


class ApiError(HTTPException):
    """HTTPException carrying a machine-readable ``code`` for the JSON body."""

    def __init__(self, status_code: int, message: str, code: str):
        super().__init__(status_code=status_code, detail=message)
        self.code = code


def unauthorized(message: str = "Unauthorized") -> ApiError:
    return ApiError(status.HTTP_401_UNAUTHORIZED, message, "unauthorized")


def not_found(message: str) -> ApiError:
    return ApiError(status.HTTP_404_NOT_FOUND, message, "not_found")


def invalid_request(message: str) -> ApiError:
    return ApiError(status.HTTP_400_BAD_REQUEST, message, "invalid_request")


def conflict(message: str) -> ApiError:
    return ApiError(status.HTTP_409_CONFLICT, message, "conflict")


def database_error(message: str = "Database error") -> ApiError:
    return ApiError(status.HTTP_500_INTERNAL_SERVER_ERROR, message, "database_error")


def code_for_status(status_code: int) -> str:
    return {
        400: "invalid_request",
        401: "unauthorized",
        403: "forbidden",
        404: "not_found",
        409: "conflict",
        422: "invalid_request",
    }.get(status_code, "internal_error" if status_code >= 500 else "invalid_request")


class DuplicateTranscriptionError(RuntimeError):
    """The audio file already has a transcription."""
