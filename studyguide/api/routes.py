"""FastAPI routes for the study guide API."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import Field

from studyguide.api.deps import (
    get_access_gate,
    get_dispatcher,
    get_job_history,
    get_object_store,
    get_settings_dep,
)
from studyguide.config import Settings
from studyguide.models.job import CamelModel, FileRef
from studyguide.services.access import AccessGate, parse_bearer_token
from studyguide.services.dispatcher import Dispatcher
from studyguide.services.history import HistoryItem, JobHistory
from studyguide.services.object_store import (
    ObjectStore,
    build_upload_object_name,
    cleanup_objects,
    validate_object_name,
)
from studyguide.utils.errors import (
    ErrorKind,
    FileTooLargeError,
    InvalidPayloadError,
    StudyGuideError,
    classify_error,
    to_public_error,
)

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/api")

NO_STORE_HEADERS = {"Cache-Control": "no-store"}

STATUS_BY_KIND = {
    ErrorKind.INVALID_PAYLOAD: 400,
    ErrorKind.INVALID_OBJECT_NAME: 400,
    ErrorKind.MISSING_JOB_ID: 400,
    ErrorKind.FILE_TOO_LARGE: 413,
    ErrorKind.MISSING_ACCESS_CODE: 401,
    ErrorKind.INVALID_ACCESS_CODE: 401,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.ACCESS_DENIED: 403,
    ErrorKind.JOB_NOT_FOUND: 404,
    ErrorKind.DISPATCH_FAILED: 502,
    ErrorKind.OVERLOAD_RETRY: 503,
    ErrorKind.GENERATION_RETRY: 503,
}


# ==================== Exception Handlers ====================


def error_response(exc: BaseException) -> JSONResponse:
    """Render any exception as ``{error: {code, message}}`` with a mapped status."""
    status_code = STATUS_BY_KIND.get(classify_error(exc), 500)
    return JSONResponse(
        status_code=status_code,
        content={"error": to_public_error(exc).to_payload()},
    )


async def study_guide_exception_handler(request: Request, exc: StudyGuideError) -> JSONResponse:
    """Handle application-specific errors."""
    if classify_error(exc) not in STATUS_BY_KIND:
        logger.error(f"{request.method} {request.url.path} failed: {type(exc).__name__}: {exc}")
    return error_response(exc)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle request body/query validation errors as invalid payloads."""
    logger.info(f"Rejected {request.url.path}: {exc.errors()}")
    return error_response(InvalidPayloadError("Invalid request payload."))


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {exc}")
    return error_response(exc)


def register_exception_handlers(app) -> None:
    app.add_exception_handler(StudyGuideError, study_guide_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)


# ==================== Request/Response Models ====================


class ProcessRequest(CamelModel):
    """Request model for job creation."""

    audio: Optional[FileRef] = None
    slides: List[FileRef] = Field(default_factory=list)
    user_context: Optional[str] = None
    model_id: Optional[str] = None
    demo_code: Optional[str] = None


class ProcessResponse(CamelModel):
    job_id: str


class RunRequest(CamelModel):
    """Request model for the run endpoint."""

    job_id: Optional[str] = None
    demo_code: Optional[str] = None


class UploadRequest(CamelModel):
    """Request model for signed upload URL issuance."""

    filename: str = Field(min_length=1)
    mime_type: str = Field(min_length=1)
    job_key: Optional[str] = None
    size_bytes: Optional[int] = Field(default=None, ge=0)
    demo_code: Optional[str] = None


class DeleteUploadsRequest(CamelModel):
    """Request model for client cleanup of uploaded objects."""

    objects: List[str] = Field(default_factory=list)
    demo_code: Optional[str] = None


class DeleteUploadsResponse(CamelModel):
    deleted: int


class UploadResponse(CamelModel):
    upload_url: str
    object_name: str
    mime_type: str
    expires_in: int


class HistoryResponse(CamelModel):
    items: List[HistoryItem]


# ==================== Endpoints ====================


@router.post("/process")
async def create_job(
    body: ProcessRequest,
    authorization: Optional[str] = Header(default=None),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> JSONResponse:
    """
    Create a study guide job from uploaded media.

    Returns the job id; call ``/api/process/run`` to start it.
    """
    job_id = await dispatcher.create(
        audio=body.audio,
        slides=body.slides,
        user_context=body.user_context,
        model_id=body.model_id,
        admin_token=parse_bearer_token(authorization),
        demo_code=body.demo_code,
    )
    return JSONResponse(content=ProcessResponse(job_id=job_id).to_payload())


@router.post("/process/run")
async def run_job(
    body: RunRequest,
    authorization: Optional[str] = Header(default=None),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> JSONResponse:
    """
    Start a queued job.

    Returns 202 while the job is in flight, 200 once terminal and 502 with the
    requeued job when the worker hand-off failed.
    """
    result = await dispatcher.run(body.job_id, parse_bearer_token(authorization), body.demo_code)
    snapshot = result.snapshot

    if result.dispatch_failed:
        status_code = 502
    elif snapshot.is_terminal:
        status_code = 200
    else:
        status_code = 202

    return JSONResponse(status_code=status_code, content=snapshot.to_payload())


@router.get("/process/status")
async def get_status(
    job_id: Optional[str] = Query(default=None, alias="jobId"),
    demo_code: Optional[str] = Query(default=None, alias="demoCode"),
    authorization: Optional[str] = Header(default=None),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> JSONResponse:
    """Get the current snapshot of a job."""
    snapshot = await dispatcher.status(job_id, parse_bearer_token(authorization), demo_code)
    return JSONResponse(content=snapshot.to_payload(), headers=NO_STORE_HEADERS)


@router.post("/uploads")
async def create_upload_url(
    body: UploadRequest,
    authorization: Optional[str] = Header(default=None),
    access_gate: AccessGate = Depends(get_access_gate),
    object_store: ObjectStore = Depends(get_object_store),
    settings: Settings = Depends(get_settings_dep),
) -> JSONResponse:
    """
    Issue a signed URL for uploading one media file straight to storage.

    Does not consume demo quota; creating the job does.
    """
    access = await access_gate.authorize_upload(parse_bearer_token(authorization), body.demo_code)

    if body.size_bytes is not None and body.size_bytes > settings.max_upload_bytes:
        raise FileTooLargeError()

    key = body.job_key or access.code or access.mode
    object_name = build_upload_object_name(key, body.filename, settings.upload_prefix)
    upload_url = await object_store.signed_upload_url(
        object_name, body.mime_type, settings.signed_url_ttl_seconds
    )

    logger.info(f"Issued upload URL for {object_name}")
    response = UploadResponse(
        upload_url=upload_url,
        object_name=object_name,
        mime_type=body.mime_type,
        expires_in=settings.signed_url_ttl_seconds,
    )
    return JSONResponse(content=response.to_payload(), headers=NO_STORE_HEADERS)


@router.get("/results")
async def list_results(
    demo_code: Optional[str] = Query(default=None, alias="demoCode"),
    limit: int = Query(default=20, ge=1, le=50),
    authorization: Optional[str] = Header(default=None),
    access_gate: AccessGate = Depends(get_access_gate),
    history: JobHistory = Depends(get_job_history),
) -> JSONResponse:
    """List recently completed jobs for the caller's access."""
    access = await access_gate.authorize_read(parse_bearer_token(authorization), demo_code)
    items = await history.list(access, limit)
    return JSONResponse(
        content=HistoryResponse(items=items).model_dump(mode="json", by_alias=True),
        headers=NO_STORE_HEADERS,
    )


@router.post("/uploads/delete")
async def delete_uploads(
    body: DeleteUploadsRequest,
    authorization: Optional[str] = Header(default=None),
    access_gate: AccessGate = Depends(get_access_gate),
    object_store: ObjectStore = Depends(get_object_store),
    settings: Settings = Depends(get_settings_dep),
) -> JSONResponse:
    """
    Delete uploaded objects that will not become part of a job.

    Every name must live under the upload namespace; exhausted demo codes may
    still clean up.
    """
    if not body.objects:
        raise InvalidPayloadError("objects required.")

    await access_gate.authorize_read(parse_bearer_token(authorization), body.demo_code)

    for name in body.objects:
        validate_object_name(name, settings.upload_prefix)

    await cleanup_objects(object_store, body.objects)

    logger.info(f"Deleted {len(body.objects)} uploaded objects")
    return JSONResponse(content=DeleteUploadsResponse(deleted=len(body.objects)).to_payload())
