"""
Client-side driver for the process API.

``JobPoller`` creates a job, asks for it to be run, then polls status with a
capped exponential backoff. Whenever the job is still startable it re-issues
``run``, since a failed dispatch leaves the job queued and nothing else will
resume it.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import httpx

from studyguide.models.job import FileRef, JobSnapshot, JobStage, JobStatus
from studyguide.utils.clock import Clock, system_clock
from studyguide.utils.errors import TRANSIENT_KINDS, StudyGuideError

logger = logging.getLogger(__name__)

INITIAL_DELAY_SECONDS = 1.0
BACKOFF_FACTOR = 1.5
MAX_DELAY_SECONDS = 8.0
MAX_ATTEMPTS = 120

STARTABLE_STAGES = frozenset({JobStage.QUEUED, JobStage.DISPATCHING, JobStage.UPLOADING})
TRANSIENT_CODES = frozenset(kind.value for kind in TRANSIENT_KINDS)


class ProcessApiError(StudyGuideError):
    """The process API answered with an ``{error: {code, message}}`` body."""

    def __init__(self, code: str, message: str, status_code: Optional[int] = None) -> None:
        self.code = code
        self.status_code = status_code
        super().__init__(message)

    @property
    def is_transient(self) -> bool:
        return self.code in TRANSIENT_CODES


class JobFailedError(StudyGuideError):
    """The job ended in ``failed`` or reported a non-transient error."""

    def __init__(self, snapshot: JobSnapshot) -> None:
        self.snapshot = snapshot
        message = snapshot.error.message if snapshot.error else "Processing failed."
        super().__init__(message)


class PollTimeoutError(StudyGuideError):
    default_message = "Timed out waiting for the study guide."


@runtime_checkable
class ProcessApi(Protocol):
    async def create(
        self,
        audio: Optional[FileRef],
        slides: List[FileRef],
        user_context: Optional[str] = None,
        model_id: Optional[str] = None,
    ) -> str:
        ...

    async def run(self, job_id: str) -> JobSnapshot:
        ...

    async def status(self, job_id: str) -> JobSnapshot:
        ...


def next_delay(delay: float) -> float:
    return min(delay * BACKOFF_FACTOR, MAX_DELAY_SECONDS)


def is_transient_snapshot(snapshot: JobSnapshot) -> bool:
    """A non-failed snapshot whose error, if any, is a retry hint."""
    if snapshot.status == JobStatus.FAILED:
        return False
    return snapshot.error is None or snapshot.error.code in TRANSIENT_CODES


def should_rerun(snapshot: JobSnapshot) -> bool:
    return snapshot.status in (JobStatus.QUEUED, JobStatus.PROCESSING) and (
        snapshot.stage in STARTABLE_STAGES
    )


class ProcessApiClient:
    """httpx client for the create/run/status endpoints."""

    def __init__(
        self,
        base_url: str,
        admin_token: Optional[str] = None,
        demo_code: Optional[str] = None,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize the ProcessApiClient.

        Args:
            base_url: Root URL of the API service
            admin_token: Admin password sent as a bearer token
            demo_code: Demo code sent with every call
            timeout: Per-request timeout in seconds
            http_client: Shared httpx client (a fresh one is used per call if omitted)
        """
        self.base_url = base_url.rstrip("/")
        self.admin_token = admin_token
        self.demo_code = demo_code
        self.timeout = timeout
        self._http_client = http_client

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.admin_token:
            headers["Authorization"] = f"Bearer {self.admin_token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = f"{self.base_url}{path}"
        if self._http_client is not None:
            return await self._http_client.request(
                method, url, headers=self._headers(), timeout=self.timeout, **kwargs
            )
        async with httpx.AsyncClient() as client:
            return await client.request(
                method, url, headers=self._headers(), timeout=self.timeout, **kwargs
            )

    @staticmethod
    def _error_from(response: httpx.Response) -> ProcessApiError:
        try:
            error = response.json().get("error") or {}
        except ValueError:
            error = {}
        return ProcessApiError(
            code=error.get("code", "internal_error"),
            message=error.get("message", f"HTTP {response.status_code}"),
            status_code=response.status_code,
        )

    def _snapshot_from(self, response: httpx.Response) -> JobSnapshot:
        """Parse a snapshot body; error bodies without a job id raise."""
        try:
            body = response.json()
        except ValueError:
            raise self._error_from(response)

        if isinstance(body, dict) and "jobId" in body:
            return JobSnapshot.model_validate(body)
        raise self._error_from(response)

    async def create(
        self,
        audio: Optional[FileRef],
        slides: List[FileRef],
        user_context: Optional[str] = None,
        model_id: Optional[str] = None,
    ) -> str:
        payload: Dict[str, Any] = {"slides": [slide.to_payload() for slide in slides]}
        if audio is not None:
            payload["audio"] = audio.to_payload()
        if user_context:
            payload["userContext"] = user_context
        if model_id:
            payload["modelId"] = model_id
        if self.demo_code:
            payload["demoCode"] = self.demo_code

        response = await self._request("POST", "/api/process", json=payload)
        if not response.is_success:
            raise self._error_from(response)
        return response.json()["jobId"]

    async def run(self, job_id: str) -> JobSnapshot:
        payload: Dict[str, Any] = {"jobId": job_id}
        if self.demo_code:
            payload["demoCode"] = self.demo_code
        response = await self._request("POST", "/api/process/run", json=payload)
        return self._snapshot_from(response)

    async def status(self, job_id: str) -> JobSnapshot:
        params = {"jobId": job_id}
        if self.demo_code:
            params["demoCode"] = self.demo_code
        response = await self._request("GET", "/api/process/status", params=params)
        if not response.is_success:
            raise self._error_from(response)
        return self._snapshot_from(response)


class JobPoller:
    """Drives a job to a terminal state through the process API."""

    def __init__(
        self,
        api: ProcessApi,
        clock: Clock = system_clock,
        initial_delay: float = INITIAL_DELAY_SECONDS,
        max_attempts: int = MAX_ATTEMPTS,
    ) -> None:
        self.api = api
        self.clock = clock
        self.initial_delay = initial_delay
        self.max_attempts = max_attempts

    async def _try_run(self, job_id: str) -> Optional[JobSnapshot]:
        """Request a run; transient API errors are swallowed and polling continues."""
        try:
            return await self.api.run(job_id)
        except ProcessApiError as e:
            if e.is_transient:
                logger.info(f"Run of job {job_id} not started yet: {e.code}")
                return None
            raise

    async def submit(
        self,
        audio: Optional[FileRef],
        slides: List[FileRef],
        user_context: Optional[str] = None,
        model_id: Optional[str] = None,
    ) -> JobSnapshot:
        """Create a job and wait for it to complete."""
        job_id = await self.api.create(audio, slides, user_context, model_id)
        logger.info(f"Created job {job_id}")
        return await self.wait(job_id)

    async def wait(self, job_id: str) -> JobSnapshot:
        """
        Run and poll a job until it completes.

        Returns:
            The completed snapshot

        Raises:
            JobFailedError: The job failed or reported a non-transient error
            PollTimeoutError: The attempt budget ran out
            ProcessApiError: A non-transient API error
        """
        snapshot = await self._try_run(job_id)
        if snapshot is not None and snapshot.status == JobStatus.COMPLETED:
            return snapshot

        delay = self.initial_delay
        for attempt in range(1, self.max_attempts + 1):
            snapshot = await self.api.status(job_id)

            if snapshot.status == JobStatus.COMPLETED:
                return snapshot
            if not is_transient_snapshot(snapshot):
                raise JobFailedError(snapshot)

            if should_rerun(snapshot):
                rerun = await self._try_run(job_id)
                if rerun is not None and rerun.status == JobStatus.COMPLETED:
                    return rerun

            logger.debug(
                f"Job {job_id} {snapshot.status.value}/{snapshot.stage.value} "
                f"{snapshot.progress}% (attempt {attempt}, next in {delay:.1f}s)"
            )
            await self.clock.sleep(delay)
            delay = next_delay(delay)

        raise PollTimeoutError()
