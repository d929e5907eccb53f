"""Job record Pydantic models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def build_job_id() -> str:
    """Generate an opaque unique job id."""
    return uuid4().hex


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStage(str, Enum):
    QUEUED = "queued"
    DISPATCHING = "dispatching"
    UPLOADING = "uploading"
    POLLING = "polling"
    GENERATING = "generating"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})

AccessMode = Literal["admin", "demo"]


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        """JSON-ready dict with camelCase keys and unset optionals dropped."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class FileRef(CamelModel):
    """Reference to a media object uploaded to the object store."""

    object_name: str = Field(
        min_length=1,
        validation_alias=AliasChoices("objectName", "objectRef", "object_name"),
    )
    mime_type: str = Field(min_length=1)


class JobRequest(CamelModel):
    """Immutable snapshot of the inputs a job was created with."""

    audio: Optional[FileRef] = None
    slides: List[FileRef] = Field(default_factory=list)
    user_context: Optional[str] = None
    model_id: Optional[str] = None

    @property
    def has_media(self) -> bool:
        return self.audio is not None or bool(self.slides)

    def object_names(self) -> List[str]:
        """All referenced object names, audio first."""
        names = [self.audio.object_name] if self.audio else []
        names.extend(slide.object_name for slide in self.slides)
        return names


class JobAccess(CamelModel):
    """Authorization context a job was created under."""

    mode: AccessMode
    code: Optional[str] = None


class UploadedFile(CamelModel):
    """Handle for a file uploaded to the generative provider."""

    name: str
    uri: str
    mime_type: str
    display_name: str = ""


class PublicError(CamelModel):
    """Stable error shape exposed to callers and persisted on the job."""

    code: str
    message: str


class JobSnapshot(CamelModel):
    """Read-only projection of a job returned by run/status calls."""

    job_id: str
    status: JobStatus
    stage: JobStage
    progress: int = 0
    result_url: Optional[str] = None
    transcript_url: Optional[str] = None
    preview: Optional[str] = None
    error: Optional[PublicError] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class JobRecord(CamelModel):
    """Single source of truth for one unit of work."""

    id: str = Field(default_factory=build_job_id, min_length=1)
    status: JobStatus = JobStatus.QUEUED
    stage: JobStage = JobStage.QUEUED
    request: JobRequest
    access: JobAccess
    uploaded: List[UploadedFile] = Field(default_factory=list)
    progress: int = Field(default=0, ge=0, le=100)
    result_url: Optional[str] = None
    transcript_url: Optional[str] = None
    preview: Optional[str] = None
    error: Optional[PublicError] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def merged(self, partial: Dict[str, Any]) -> "JobRecord":
        """Return a validated copy with ``partial`` fields applied."""
        data = self.model_dump()
        data.update(partial)
        return JobRecord.model_validate(data)

    def snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            job_id=self.id,
            status=self.status,
            stage=self.stage,
            progress=self.progress,
            result_url=self.result_url,
            transcript_url=self.transcript_url,
            preview=self.preview,
            error=self.error,
        )
