"""Error kinds and exception classes for the study guide service."""

import re
from enum import Enum
from typing import Optional

from studyguide.models.job import PublicError

MAX_PUBLIC_MESSAGE_LENGTH = 200

GENERIC_FAILURE_MESSAGE = "Processing failed. Please retry."


class ErrorKind(str, Enum):
    """Closed set of error kinds; the value is the public error code."""

    INVALID_PAYLOAD = "invalid_payload"
    INVALID_OBJECT_NAME = "invalid_object_name"
    MISSING_JOB_ID = "missing_job_id"
    FILE_TOO_LARGE = "file_too_large"
    MISSING_ACCESS_CODE = "missing_access_code"
    INVALID_ACCESS_CODE = "invalid_access_code"
    UNAUTHORIZED = "unauthorized"
    ACCESS_DENIED = "access_denied"
    JOB_NOT_FOUND = "job_not_found"
    DISPATCH_FAILED = "dispatch_failed"
    OVERLOAD_RETRY = "overloaded_retry"
    GENERATION_RETRY = "generation_retry"
    PROVIDER_PROCESSING_FAILED = "provider_processing_failed"
    TRANSCRIPT_MISSING = "transcript_missing"
    PROCESSING_TIMEOUT = "processing_timeout"
    CONFIGURATION = "configuration_error"
    UNCLASSIFIED = "internal_error"


# Kinds that send a job back to queued instead of failing it.
TRANSIENT_KINDS = frozenset(
    {ErrorKind.DISPATCH_FAILED, ErrorKind.OVERLOAD_RETRY, ErrorKind.GENERATION_RETRY}
)

# Kinds whose message is safe and useful to show to the caller as-is.
USER_FACING_KINDS = frozenset(
    {
        ErrorKind.INVALID_PAYLOAD,
        ErrorKind.INVALID_OBJECT_NAME,
        ErrorKind.MISSING_JOB_ID,
        ErrorKind.FILE_TOO_LARGE,
        ErrorKind.MISSING_ACCESS_CODE,
        ErrorKind.INVALID_ACCESS_CODE,
        ErrorKind.UNAUTHORIZED,
        ErrorKind.ACCESS_DENIED,
        ErrorKind.JOB_NOT_FOUND,
        ErrorKind.DISPATCH_FAILED,
        ErrorKind.OVERLOAD_RETRY,
        ErrorKind.GENERATION_RETRY,
        ErrorKind.PROVIDER_PROCESSING_FAILED,
        ErrorKind.TRANSCRIPT_MISSING,
        ErrorKind.PROCESSING_TIMEOUT,
    }
)


class StudyGuideError(Exception):
    """Base exception for all application errors."""

    kind: ErrorKind = ErrorKind.UNCLASSIFIED
    default_message: str = GENERIC_FAILURE_MESSAGE

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class InvalidPayloadError(StudyGuideError):
    """Request is missing media or otherwise malformed."""

    kind = ErrorKind.INVALID_PAYLOAD
    default_message = "Missing audio or slide payload."


class InvalidObjectNameError(InvalidPayloadError):
    """Referenced object name is outside the upload namespace."""

    kind = ErrorKind.INVALID_OBJECT_NAME
    default_message = "Invalid object name."


class MissingJobIdError(InvalidPayloadError):
    """A run/status call arrived without a job id."""

    kind = ErrorKind.MISSING_JOB_ID
    default_message = "jobId is required."


class FileTooLargeError(InvalidPayloadError):
    """Declared upload size exceeds the configured limit."""

    kind = ErrorKind.FILE_TOO_LARGE
    default_message = "File exceeds the allowed upload size."


class AccessError(StudyGuideError):
    """Caller is not allowed to create, run or read a job."""

    kind = ErrorKind.UNAUTHORIZED
    default_message = "Unauthorized."


class MissingAccessCodeError(AccessError):
    kind = ErrorKind.MISSING_ACCESS_CODE
    default_message = "Access code required."


class InvalidAccessCodeError(AccessError):
    kind = ErrorKind.INVALID_ACCESS_CODE
    default_message = "Invalid or exhausted demo code."


class AccessDeniedError(AccessError):
    """Credentials are valid but do not match the job's stored access."""

    kind = ErrorKind.ACCESS_DENIED
    default_message = "Access denied for this job."


class JobNotFoundError(StudyGuideError):
    kind = ErrorKind.JOB_NOT_FOUND
    default_message = "Job not found."


class JobStoreError(StudyGuideError):
    """The job record store could not be read or written."""

    pass


class ConfigurationError(StudyGuideError):
    """A required setting is missing."""

    kind = ErrorKind.CONFIGURATION


class DispatchFailedError(StudyGuideError):
    """Handing a job to the worker failed; the job goes back to queued."""

    kind = ErrorKind.DISPATCH_FAILED
    default_message = "Worker dispatch failed. Try again shortly."


class ProviderError(StudyGuideError):
    """Generative provider returned an unusable response."""

    def __init__(self, message: Optional[str] = None, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class OverloadRetryError(ProviderError):
    """Provider reported capacity exhaustion; retry without changing inputs."""

    kind = ErrorKind.OVERLOAD_RETRY
    default_message = "The model is overloaded. Retrying shortly."


class GenerationRetryError(ProviderError):
    """Readiness polling or generation timed out; retry without changing inputs."""

    kind = ErrorKind.GENERATION_RETRY
    default_message = "Processing still pending. Retrying shortly."


class ProviderProcessingFailedError(ProviderError):
    """Provider marked an uploaded file as failed."""

    kind = ErrorKind.PROVIDER_PROCESSING_FAILED
    default_message = "Remote file processing failed."


class TranscriptMissingError(StudyGuideError):
    """Generated text has no transcript section."""

    kind = ErrorKind.TRANSCRIPT_MISSING
    default_message = "Transcript missing in output."


class ProcessingTimeoutError(StudyGuideError):
    kind = ErrorKind.PROCESSING_TIMEOUT
    default_message = "Processing timed out. Please retry."


_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]+")


def sanitize_message(message: str, limit: int = MAX_PUBLIC_MESSAGE_LENGTH) -> str:
    """Strip control characters and cap the length of a message."""
    cleaned = _CONTROL_CHARS.sub(" ", message).strip()
    if len(cleaned) > limit:
        cleaned = cleaned[: limit - 3].rstrip() + "..."
    return cleaned


def classify_error(error: BaseException) -> ErrorKind:
    """Return the error kind for any exception."""
    if isinstance(error, StudyGuideError):
        return error.kind
    return ErrorKind.UNCLASSIFIED


def to_public_error(error: BaseException) -> PublicError:
    """
    Normalize an exception into a stable code/message pair.

    Args:
        error: Any exception raised while handling a request or running a job

    Returns:
        PublicError safe to persist and show to the caller
    """
    kind = classify_error(error)
    if kind in USER_FACING_KINDS:
        return PublicError(code=kind.value, message=sanitize_message(str(error)))
    return PublicError(code=ErrorKind.UNCLASSIFIED.value, message=GENERIC_FAILURE_MESSAGE)
