"""
Worker pipeline: upload, poll readiness, generate, validate, persist, clean up.

A single invocation advances one job through its stages. Transient failures
(provider overload, readiness or generation timeouts) put the job back in
``queued`` with a retry hint and keep the remote file handles so the next
attempt skips the upload stage. Every other failure is terminal.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from studyguide.models.job import (
    FileRef,
    JobRecord,
    JobSnapshot,
    JobStage,
    JobStatus,
    PublicError,
    UploadedFile,
)
from studyguide.services.history import JobHistory
from studyguide.services.job_store import JobStore
from studyguide.services.object_store import ObjectStore, cleanup_objects
from studyguide.services.prompts import GENERATION_REQUEST, build_prompt
from studyguide.services.provider import GenerativeProvider, summarize_readiness
from studyguide.services.results import ResultStorage, build_preview, parse_result_text
from studyguide.utils.clock import Clock, system_clock
from studyguide.utils.errors import (
    TRANSIENT_KINDS,
    ErrorKind,
    GenerationRetryError,
    JobNotFoundError,
    ProviderProcessingFailedError,
    TranscriptMissingError,
    classify_error,
    to_public_error,
)

logger = logging.getLogger(__name__)

PROGRESS_UPLOADING = 5
PROGRESS_POLLING = 25
PROGRESS_POLLING_SPAN = 40
PROGRESS_GENERATING = 80
PROGRESS_DONE = 100

RETRY_MESSAGES = {
    ErrorKind.OVERLOAD_RETRY: "The model is overloaded. Retrying shortly.",
    ErrorKind.GENERATION_RETRY: "Processing still pending. Retrying shortly.",
    ErrorKind.DISPATCH_FAILED: "Worker dispatch failed. Try again shortly.",
}


@dataclass
class _Attempt:
    """Mutable bookkeeping for one pass of the pipeline over a job."""

    job: JobRecord
    stage: JobStage
    progress: int
    uploaded: List[UploadedFile] = field(default_factory=list)
    uploads_persisted: bool = False


def upload_sources(job: JobRecord) -> List[Tuple[FileRef, str]]:
    """Media to upload, audio first, with provider display names."""
    sources: List[Tuple[FileRef, str]] = []
    if job.request.audio:
        sources.append((job.request.audio, "Lecture Audio"))
    for index, slide in enumerate(job.request.slides):
        sources.append((slide, f"Lecture Slide {index + 1}"))
    return sources


class WorkerPipeline:
    """Runs the multi-step generation pipeline for one job at a time."""

    def __init__(
        self,
        store: JobStore,
        object_store: ObjectStore,
        provider: GenerativeProvider,
        results: ResultStorage,
        system_instruction: str,
        default_model_id: str,
        history: Optional[JobHistory] = None,
        poll_interval: float = 2.0,
        poll_timeout: float = 15 * 60.0,
        clock: Clock = system_clock,
    ) -> None:
        """
        Initialize the WorkerPipeline.

        Args:
            store: Job record store
            object_store: Store holding uploaded media and results
            provider: Generative provider adapter
            results: Result persistence helper
            system_instruction: Base system prompt
            default_model_id: Model used when the job did not pick one
            history: Optional per-access history recorder
            poll_interval: Seconds between readiness checks
            poll_timeout: Seconds of readiness polling before requeueing
            clock: Time source for polling
        """
        self.store = store
        self.object_store = object_store
        self.provider = provider
        self.results = results
        self.system_instruction = system_instruction
        self.default_model_id = default_model_id
        self.history = history
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.clock = clock

    async def _advance(self, attempt: _Attempt, stage: JobStage, progress: int, **extra: Any) -> JobRecord:
        attempt.stage = stage
        attempt.progress = max(attempt.progress, progress)
        partial: Dict[str, Any] = {
            "status": JobStatus.PROCESSING,
            "stage": stage,
            "progress": attempt.progress,
            "error": None,
        }
        partial.update(extra)
        attempt.job = await self.store.patch(attempt.job.id, partial)
        return attempt.job

    async def run_job(self, job_id: str) -> JobSnapshot:
        """
        Advance a job through the pipeline.

        Args:
            job_id: Job to run

        Returns:
            Snapshot of the job after this attempt (completed, failed or requeued)

        Raises:
            JobNotFoundError: If the job does not exist
            JobStoreError: If the outcome could not be written
        """
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError()

        if job.is_terminal:
            return job.snapshot()

        attempt = _Attempt(
            job=job,
            stage=job.stage,
            progress=job.progress,
            uploaded=list(job.uploaded),
            uploads_persisted=bool(job.uploaded),
        )
        blob_names = job.request.object_names()
        cleanup_provider = False
        cleanup_blobs = False

        try:
            snapshot = await self._run_stages(attempt)
            cleanup_provider = True
            cleanup_blobs = True
            return snapshot

        except Exception as error:
            kind = classify_error(error)

            if kind in TRANSIENT_KINDS:
                logger.warning(f"Job {job_id} requeued at stage {attempt.stage.value}: {kind.value}")
                queued = await self.store.patch(
                    job_id,
                    {
                        "status": JobStatus.QUEUED,
                        "stage": JobStage.QUEUED,
                        "progress": 0,
                        "error": PublicError(code=kind.value, message=RETRY_MESSAGES[kind]),
                    },
                )
                # Handles never written to the record cannot be resumed from.
                cleanup_provider = not attempt.uploads_persisted
                return queued.snapshot()

            if kind == ErrorKind.UNCLASSIFIED:
                logger.exception(f"Job {job_id} failed at stage {attempt.stage.value}: {error}")
            else:
                logger.warning(f"Job {job_id} failed at stage {attempt.stage.value}: {kind.value}")

            failed = await self.store.patch(
                job_id,
                {
                    "status": JobStatus.FAILED,
                    "stage": attempt.stage,
                    "error": to_public_error(error),
                },
            )
            cleanup_provider = True
            cleanup_blobs = True
            return failed.snapshot()

        finally:
            if cleanup_provider and attempt.uploaded:
                await self._cleanup_provider_files(attempt.uploaded)
            if cleanup_blobs and blob_names:
                await cleanup_objects(self.object_store, blob_names)

    async def _run_stages(self, attempt: _Attempt) -> JobSnapshot:
        job = attempt.job
        instruction = build_prompt(
            system_prompt=self.system_instruction,
            has_audio=job.request.audio is not None,
            has_slides=bool(job.request.slides),
            user_context=job.request.user_context,
        )

        if attempt.uploaded:
            logger.info(f"Job {job.id} resuming with {len(attempt.uploaded)} uploaded file(s)")
            await self._advance(attempt, JobStage.POLLING, PROGRESS_POLLING)
        else:
            await self._advance(attempt, JobStage.UPLOADING, PROGRESS_UPLOADING)
            await self._upload(attempt)
            await self._advance(
                attempt, JobStage.POLLING, PROGRESS_POLLING, uploaded=list(attempt.uploaded)
            )
            attempt.uploads_persisted = True

        await self._wait_until_ready(attempt)

        await self._advance(attempt, JobStage.GENERATING, PROGRESS_GENERATING)
        model_id = job.request.model_id or self.default_model_id
        logger.info(f"Job {job.id} generating with model {model_id}")

        text = await self.provider.generate(
            model_id=model_id,
            system_instruction=instruction,
            prompt=GENERATION_REQUEST,
            files=attempt.uploaded,
        )

        parsed = parse_result_text(text)
        if not parsed.transcript:
            raise TranscriptMissingError()

        stored = await self.results.store(text, parsed, job.id)
        completed = await self.store.patch(
            job.id,
            {
                "status": JobStatus.COMPLETED,
                "stage": JobStage.GENERATING,
                "progress": PROGRESS_DONE,
                "result_url": stored.result_url,
                "transcript_url": stored.transcript_url,
                "preview": build_preview(parsed.study_guide),
                "error": None,
            },
        )
        attempt.job = completed
        logger.info(f"Job {job.id} completed")

        await self._record_history(completed)
        return completed.snapshot()

    async def _upload(self, attempt: _Attempt) -> None:
        """Upload every source, appending handles to the attempt as they are created."""
        sources = upload_sources(attempt.job)
        span = PROGRESS_POLLING - PROGRESS_UPLOADING
        for done, (ref, display_name) in enumerate(sources, start=1):
            data = await self.object_store.read_bytes(ref.object_name)
            handle = await self.provider.upload_file(data, ref.mime_type, display_name)
            attempt.uploaded.append(handle)
            # Keeps updated_at fresh; stays below the polling floor.
            progress = PROGRESS_UPLOADING + span * done // (len(sources) + 1)
            await self._advance(attempt, JobStage.UPLOADING, progress)

    async def _wait_until_ready(self, attempt: _Attempt) -> None:
        """
        Poll provider-side processing until every file is active.

        Raises:
            ProviderProcessingFailedError: A file was marked failed
            GenerationRetryError: The polling budget ran out
        """
        started = self.clock.monotonic()

        while True:
            states = [await self.provider.get_file_state(file) for file in attempt.uploaded]
            readiness = summarize_readiness(states)

            if readiness.failed:
                raise ProviderProcessingFailedError()
            if readiness.ready:
                return
            if self.clock.monotonic() - started > self.poll_timeout:
                raise GenerationRetryError("Remote file processing still pending.")

            progress = PROGRESS_POLLING + int(readiness.fraction * PROGRESS_POLLING_SPAN)
            await self._advance(attempt, JobStage.POLLING, progress)
            await self.clock.sleep(self.poll_interval)

    async def _cleanup_provider_files(self, files: List[UploadedFile]) -> None:
        for file in files:
            try:
                await self.provider.delete_file(file)
            except Exception as e:
                logger.error(f"Provider file cleanup failed for {file.name}: {e}")

    async def _record_history(self, job: JobRecord) -> None:
        if self.history is None:
            return
        try:
            await self.history.record(job)
        except Exception as e:
            logger.error(f"Failed to record history for job {job.id}: {e}")


def create_worker_pipeline(
    store: Optional[JobStore] = None,
    object_store: Optional[ObjectStore] = None,
    provider: Optional[GenerativeProvider] = None,
    history: Optional[JobHistory] = None,
) -> WorkerPipeline:
    """
    Create a WorkerPipeline using application settings.

    Returns:
        Configured WorkerPipeline instance
    """
    from studyguide.config import get_settings
    from studyguide.services.history import create_job_history
    from studyguide.services.job_store import create_job_store
    from studyguide.services.object_store import create_object_store
    from studyguide.services.prompts import get_system_instruction
    from studyguide.services.provider import create_provider

    settings = get_settings()
    object_store = object_store or create_object_store()
    return WorkerPipeline(
        store=store or create_job_store(),
        object_store=object_store,
        provider=provider or create_provider(),
        results=ResultStorage(object_store, url_ttl_seconds=settings.signed_url_ttl_seconds),
        system_instruction=get_system_instruction(settings.system_instructions),
        default_model_id=settings.default_model_id,
        history=history or create_job_history(),
        poll_interval=settings.worker_poll_interval_seconds,
        poll_timeout=settings.worker_poll_timeout_seconds,
    )
