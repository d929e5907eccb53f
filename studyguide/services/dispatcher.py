"""
Dispatcher: job creation, run hand-off to the worker, and status reads.

``run`` is safe to call repeatedly: terminal and in-flight jobs are returned
untouched, and only a queued job is marked ``processing/dispatching`` and
handed to the worker. A failed hand-off returns the job to ``queued`` with a
``dispatch_failed`` hint so the client poller calls ``run`` again.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, List, Optional, Protocol, Set, runtime_checkable

import httpx

from studyguide.models.job import (
    FileRef,
    JobAccess,
    JobRecord,
    JobRequest,
    JobSnapshot,
    JobStage,
    JobStatus,
    PublicError,
)
from studyguide.services.access import AccessGate
from studyguide.services.job_store import JobStore
from studyguide.services.object_store import validate_object_name
from studyguide.services.pipeline import RETRY_MESSAGES, WorkerPipeline
from studyguide.utils.clock import Clock, system_clock
from studyguide.utils.errors import (
    ConfigurationError,
    DispatchFailedError,
    ErrorKind,
    InvalidPayloadError,
    JobNotFoundError,
    MissingJobIdError,
    ProcessingTimeoutError,
    to_public_error,
)

logger = logging.getLogger(__name__)

PROGRESS_DISPATCHED = 1


@runtime_checkable
class WorkerDispatcher(Protocol):
    """Hands a job id to whatever executes the worker pipeline."""

    async def dispatch(self, job_id: str) -> None:
        """
        Raises:
            DispatchFailedError: If the worker could not be reached or refused the job
        """
        ...


class InlineWorkerDispatcher:
    """
    Runs the pipeline in-process.

    With ``detach`` the run is scheduled as a background task and ``dispatch``
    returns at once; otherwise it waits for the pipeline to finish.
    """

    def __init__(self, pipeline: WorkerPipeline, detach: bool = False) -> None:
        self.pipeline = pipeline
        self.detach = detach
        self._tasks: Set[asyncio.Task] = set()

    async def _run(self, job_id: str) -> None:
        snapshot = await self.pipeline.run_job(job_id)
        logger.info(f"Inline run of job {job_id} ended as {snapshot.status.value}")

    def _forget(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background run failed: {task.exception()}")

    async def dispatch(self, job_id: str) -> None:
        if not self.detach:
            await self._run(job_id)
            return

        task = asyncio.create_task(self._run(job_id))
        self._tasks.add(task)
        task.add_done_callback(self._forget)


class HttpWorkerDispatcher:
    """Posts the job id to the worker service with a shared-secret bearer token."""

    def __init__(
        self,
        worker_url: str,
        shared_secret: str,
        timeout: float = 5.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize the HttpWorkerDispatcher.

        Args:
            worker_url: Base URL of the worker service
            shared_secret: Bearer token the worker expects
            timeout: Seconds to wait for the worker to accept the job
            http_client: Shared httpx client (a fresh one is used per call if omitted)
        """
        if not worker_url or not shared_secret:
            raise ConfigurationError("Worker is not configured.")

        self.endpoint = worker_url.rstrip("/") + "/worker/run"
        self.shared_secret = shared_secret
        self.timeout = timeout
        self._http_client = http_client

    async def _post(self, client: httpx.AsyncClient, job_id: str) -> httpx.Response:
        return await client.post(
            self.endpoint,
            json={"jobId": job_id},
            headers={
                "Authorization": f"Bearer {self.shared_secret}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
        )

    async def dispatch(self, job_id: str) -> None:
        try:
            if self._http_client is not None:
                response = await self._post(self._http_client, job_id)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._post(client, job_id)
        except httpx.ReadTimeout:
            # The request reached the worker, which answers only once the run ends.
            logger.info(f"Worker accepted job {job_id}; not waiting for the run to finish")
            return
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.error(f"Dispatch of job {job_id} failed: {type(e).__name__}: {e}")
            raise DispatchFailedError()

        if not response.is_success:
            logger.error(f"Worker rejected job {job_id} with HTTP {response.status_code}")
            raise DispatchFailedError()


@dataclass(frozen=True)
class RunResult:
    """Outcome of a run call; ``dispatch_failed`` marks a failed hand-off."""

    snapshot: JobSnapshot
    dispatch_failed: bool = False


def resolve_model_id(
    requested: Optional[str],
    access: JobAccess,
    allowed: Iterable[str],
    premium: Iterable[str],
    default: str,
) -> str:
    """
    Clamp the requested model to the allow-list.

    Unknown models fall back to ``default``; premium models are downgraded to
    ``default`` for non-admin access.
    """
    allowed_set = set(allowed)
    model_id = requested if requested in allowed_set else default
    if access.mode != "admin" and model_id in set(premium):
        logger.info(f"Downgrading premium model {model_id} to {default} for demo access")
        model_id = default
    return model_id


class Dispatcher:
    """Creates jobs, hands them to the worker and reports their status."""

    def __init__(
        self,
        store: JobStore,
        access_gate: AccessGate,
        worker: WorkerDispatcher,
        allowed_model_ids: Iterable[str],
        premium_model_ids: Iterable[str],
        default_model_id: str,
        upload_prefix: str = "uploads/",
        stale_after_seconds: float = 0,
        clock: Clock = system_clock,
    ) -> None:
        """
        Initialize the Dispatcher.

        Args:
            store: Job record store
            access_gate: Authorization collaborator
            worker: Strategy that executes or forwards the pipeline
            allowed_model_ids: Models a request may select
            premium_model_ids: Models reserved for admin access
            default_model_id: Fallback model
            upload_prefix: Namespace referenced objects must live under
            stale_after_seconds: Age after which a processing job is failed
                by ``status`` (0 disables the check)
            clock: Time source for staleness
        """
        self.store = store
        self.access_gate = access_gate
        self.worker = worker
        self.allowed_model_ids: List[str] = list(allowed_model_ids)
        self.premium_model_ids: List[str] = list(premium_model_ids)
        self.default_model_id = default_model_id
        self.upload_prefix = upload_prefix
        self.stale_after_seconds = stale_after_seconds
        self.clock = clock

    def validate_request(self, request: JobRequest) -> None:
        """
        Raises:
            InvalidPayloadError: If no media is present
            InvalidObjectNameError: If a referenced object escapes the upload namespace
        """
        if not request.has_media:
            raise InvalidPayloadError()

        for name in request.object_names():
            validate_object_name(name, self.upload_prefix)

    async def create(
        self,
        audio: Optional[FileRef],
        slides: List[FileRef],
        user_context: Optional[str],
        model_id: Optional[str],
        admin_token: Optional[str],
        demo_code: Optional[str],
    ) -> str:
        """
        Validate a creation request and write the queued job.

        Returns:
            The new job id

        Raises:
            InvalidPayloadError: Missing media or invalid object names
            AccessError: The gate rejected the caller
        """
        request = JobRequest(
            audio=audio,
            slides=slides,
            user_context=(user_context or "").strip() or None,
            model_id=model_id,
        )
        self.validate_request(request)

        access = await self.access_gate.authorize_create(admin_token, demo_code)
        request = request.model_copy(
            update={
                "model_id": resolve_model_id(
                    model_id,
                    access,
                    self.allowed_model_ids,
                    self.premium_model_ids,
                    self.default_model_id,
                )
            }
        )

        now = self.clock.now()
        job = JobRecord(
            status=JobStatus.QUEUED,
            stage=JobStage.QUEUED,
            request=request,
            access=access,
            progress=0,
            created_at=now,
            updated_at=now,
        )
        await self.store.put(job)

        logger.info(f"Created job {job.id} ({access.mode}, model {request.model_id})")
        return job.id

    async def _load_authorized(
        self, job_id: Optional[str], admin_token: Optional[str], demo_code: Optional[str]
    ) -> JobRecord:
        if not job_id:
            raise MissingJobIdError()

        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError()

        self.access_gate.authorize_job(job.access, admin_token, demo_code)
        return job

    async def run(
        self, job_id: Optional[str], admin_token: Optional[str], demo_code: Optional[str]
    ) -> RunResult:
        """
        Start a queued job; return any other job unchanged.

        Raises:
            MissingJobIdError: No job id
            JobNotFoundError: Unknown or expired job
            AccessError: Caller does not match the job's stored access
        """
        job = await self._load_authorized(job_id, admin_token, demo_code)

        if job.status != JobStatus.QUEUED:
            return RunResult(snapshot=job.snapshot())

        await self.store.patch(
            job.id,
            {
                "status": JobStatus.PROCESSING,
                "stage": JobStage.DISPATCHING,
                "progress": PROGRESS_DISPATCHED,
                "error": None,
            },
        )

        try:
            await self.worker.dispatch(job.id)
        except Exception as e:
            if not isinstance(e, DispatchFailedError):
                logger.error(
                    f"Unexpected {type(e).__name__} dispatching job {job.id}: {e}", exc_info=True
                )
            queued = await self.store.patch(
                job.id,
                {
                    "status": JobStatus.QUEUED,
                    "stage": JobStage.QUEUED,
                    "progress": 0,
                    "error": PublicError(
                        code=ErrorKind.DISPATCH_FAILED.value,
                        message=RETRY_MESSAGES[ErrorKind.DISPATCH_FAILED],
                    ),
                },
            )
            return RunResult(snapshot=queued.snapshot(), dispatch_failed=True)

        current = await self.store.get(job.id)
        if current is None:
            raise JobNotFoundError()
        return RunResult(snapshot=current.snapshot())

    def is_stale(self, job: JobRecord) -> bool:
        if self.stale_after_seconds <= 0 or job.status != JobStatus.PROCESSING:
            return False
        age = self.clock.now() - job.updated_at
        return age > timedelta(seconds=self.stale_after_seconds)

    async def status(
        self, job_id: Optional[str], admin_token: Optional[str], demo_code: Optional[str]
    ) -> JobSnapshot:
        """
        Read a job's snapshot, failing processing jobs that stopped updating.

        Raises:
            MissingJobIdError: No job id
            JobNotFoundError: Unknown or expired job
            AccessError: Caller does not match the job's stored access
        """
        job = await self._load_authorized(job_id, admin_token, demo_code)

        if self.is_stale(job):
            logger.warning(f"Job {job.id} stale since {job.updated_at.isoformat()}; failing")
            failed = await self.store.patch(
                job.id,
                {"status": JobStatus.FAILED, "error": to_public_error(ProcessingTimeoutError())},
            )
            return failed.snapshot()

        return job.snapshot()


def create_worker_dispatcher(pipeline: Optional[WorkerPipeline] = None) -> WorkerDispatcher:
    """
    Create the WorkerDispatcher selected by ``DISPATCH_MODE``.

    Returns:
        HTTP dispatcher for ``remote``, inline pipeline runner otherwise
    """
    from studyguide.config import get_settings

    settings = get_settings()
    if settings.dispatch_mode == "remote":
        return HttpWorkerDispatcher(
            worker_url=settings.worker_url,
            shared_secret=settings.worker_shared_secret,
            timeout=settings.worker_dispatch_timeout_seconds,
        )

    from studyguide.services.pipeline import create_worker_pipeline

    return InlineWorkerDispatcher(pipeline or create_worker_pipeline())


def create_dispatcher(
    store: Optional[JobStore] = None,
    access_gate: Optional[AccessGate] = None,
    worker: Optional[WorkerDispatcher] = None,
) -> Dispatcher:
    """
    Create a Dispatcher using application settings.

    Returns:
        Configured Dispatcher instance
    """
    from studyguide.config import get_settings
    from studyguide.services.access import create_access_gate
    from studyguide.services.job_store import create_job_store

    settings = get_settings()
    store = store or create_job_store()
    if worker is None:
        if settings.dispatch_mode == "remote":
            worker = create_worker_dispatcher()
        else:
            from studyguide.services.pipeline import create_worker_pipeline

            worker = InlineWorkerDispatcher(create_worker_pipeline(store=store))

    return Dispatcher(
        store=store,
        access_gate=access_gate or create_access_gate(),
        worker=worker,
        allowed_model_ids=settings.allowed_model_ids,
        premium_model_ids=settings.premium_model_ids,
        default_model_id=settings.default_model_id,
        upload_prefix=settings.upload_prefix,
        stale_after_seconds=settings.processing_stale_seconds,
    )
