"""Utility modules for the study guide service."""

from studyguide.utils.clock import Clock, SystemClock, system_clock
from studyguide.utils.errors import (
    TRANSIENT_KINDS,
    AccessDeniedError,
    AccessError,
    DispatchFailedError,
    ErrorKind,
    GenerationRetryError,
    InvalidPayloadError,
    JobNotFoundError,
    OverloadRetryError,
    StudyGuideError,
    TranscriptMissingError,
    classify_error,
    to_public_error,
)
from studyguide.utils.retry import retry_async, with_retry

__all__ = [
    "Clock",
    "SystemClock",
    "system_clock",
    "ErrorKind",
    "TRANSIENT_KINDS",
    "StudyGuideError",
    "InvalidPayloadError",
    "AccessError",
    "AccessDeniedError",
    "JobNotFoundError",
    "DispatchFailedError",
    "OverloadRetryError",
    "GenerationRetryError",
    "TranscriptMissingError",
    "classify_error",
    "to_public_error",
    "retry_async",
    "with_retry",
]
