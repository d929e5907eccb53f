"""Pydantic data models for the study guide service."""

from studyguide.models.job import (
    FileRef,
    JobAccess,
    JobRecord,
    JobRequest,
    JobSnapshot,
    JobStage,
    JobStatus,
    PublicError,
    UploadedFile,
)

__all__ = [
    "FileRef",
    "JobAccess",
    "JobRecord",
    "JobRequest",
    "JobSnapshot",
    "JobStage",
    "JobStatus",
    "PublicError",
    "UploadedFile",
]
