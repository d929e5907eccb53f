"""Generative provider adapter for the Gemini REST Files and generateContent APIs."""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence, runtime_checkable

import httpx

from studyguide.models.job import UploadedFile
from studyguide.utils.errors import (
    ConfigurationError,
    GenerationRetryError,
    OverloadRetryError,
    ProviderError,
)
from studyguide.utils.retry import with_retry

logger = logging.getLogger(__name__)

GEMINI_API_BASE = "https://generativelanguage.googleapis.com"
OVERLOAD_STATUS_CODES = frozenset({429, 503})
OVERLOAD_MARKERS = ("overloaded", "unavailable", "resource_exhausted")


class FileState(str, Enum):
    PROCESSING = "PROCESSING"
    ACTIVE = "ACTIVE"
    FAILED = "FAILED"


@dataclass(frozen=True)
class Readiness:
    """Aggregate readiness of a set of uploaded files."""

    total: int
    ready_count: int
    failed: bool

    @property
    def ready(self) -> bool:
        return not self.failed and self.ready_count >= self.total

    @property
    def fraction(self) -> float:
        return self.ready_count / max(1, self.total)


def summarize_readiness(states: Sequence[FileState]) -> Readiness:
    return Readiness(
        total=len(states),
        ready_count=sum(1 for state in states if state == FileState.ACTIVE),
        failed=any(state == FileState.FAILED for state in states),
    )


@runtime_checkable
class GenerativeProvider(Protocol):
    """Upload files, report their readiness and generate text from them."""

    async def upload_file(self, data: bytes, mime_type: str, display_name: str) -> UploadedFile:
        ...

    async def get_file_state(self, file: UploadedFile) -> FileState:
        ...

    async def generate(
        self,
        model_id: str,
        system_instruction: str,
        prompt: str,
        files: Sequence[UploadedFile],
    ) -> str:
        ...

    async def delete_file(self, file: UploadedFile) -> None:
        ...


def is_overload(status_code: int, body: str) -> bool:
    """Provider signalled capacity exhaustion rather than a request problem."""
    if status_code in OVERLOAD_STATUS_CODES:
        return True
    lowered = body.lower()
    return status_code >= 500 and any(marker in lowered for marker in OVERLOAD_MARKERS)


def raise_for_provider_status(response: httpx.Response) -> None:
    """
    Map a non-success provider response onto the error taxonomy.

    Raises:
        OverloadRetryError: For 429/503 or an "overloaded" 5xx body
        GenerationRetryError: For a 504 gateway timeout
        ProviderError: For any other non-success status
    """
    if response.is_success:
        return

    body = response.text[:500]
    if is_overload(response.status_code, body):
        raise OverloadRetryError(status_code=response.status_code)
    if response.status_code == 504:
        raise GenerationRetryError(status_code=response.status_code)
    raise ProviderError(
        f"Provider error {response.status_code}: {body}",
        status_code=response.status_code,
    )


def extract_text(payload: Dict[str, Any]) -> str:
    """Concatenate the text parts of the first candidate."""
    candidates = payload.get("candidates") or []
    if not candidates:
        feedback = payload.get("promptFeedback", {})
        raise ProviderError(f"Provider returned no candidates: {feedback}")

    parts = candidates[0].get("content", {}).get("parts", []) or []
    return "".join(part.get("text", "") for part in parts)


class GeminiProvider:
    """Service for uploading lecture media to Gemini and generating study guides."""

    def __init__(
        self,
        api_key: str,
        api_base: str = GEMINI_API_BASE,
        upload_timeout: float = 300.0,
        generation_timeout: float = 600.0,
        temperature: float = 0.2,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize the GeminiProvider.

        Args:
            api_key: Gemini API key
            api_base: Base URL of the Generative Language API
            upload_timeout: Timeout in seconds for a single file upload
            generation_timeout: Timeout in seconds for the generateContent call
            temperature: Sampling temperature for generation
            http_client: Shared httpx client (a fresh one is used per call if omitted)
        """
        if not api_key:
            raise ConfigurationError("Server Config Error: Missing API Key")

        self.api_key = api_key
        self.api_base = api_base.rstrip("/")
        self.upload_timeout = upload_timeout
        self.generation_timeout = generation_timeout
        self.temperature = temperature
        self._http_client = http_client

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient() as client:
            yield client

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"x-goog-api-key": self.api_key}
        if extra:
            headers.update(extra)
        return headers

    async def upload_file(self, data: bytes, mime_type: str, display_name: str) -> UploadedFile:
        """
        Upload one file with the resumable upload protocol.

        Args:
            data: File bytes
            mime_type: MIME type of the file
            display_name: Human-readable name shown by the provider

        Returns:
            Handle of the uploaded file

        Raises:
            ProviderError: If the provider rejects the upload
        """
        async with self._session() as client:
            start = await client.post(
                f"{self.api_base}/upload/v1beta/files",
                json={"file": {"display_name": display_name}},
                headers=self._headers(
                    {
                        "X-Goog-Upload-Protocol": "resumable",
                        "X-Goog-Upload-Command": "start",
                        "X-Goog-Upload-Header-Content-Length": str(len(data)),
                        "X-Goog-Upload-Header-Content-Type": mime_type,
                    }
                ),
                timeout=self.upload_timeout,
            )
            raise_for_provider_status(start)

            upload_url = start.headers.get("x-goog-upload-url")
            if not upload_url:
                raise ProviderError("Provider did not return an upload URL")

            finish = await client.post(
                upload_url,
                content=data,
                headers=self._headers(
                    {
                        "X-Goog-Upload-Offset": "0",
                        "X-Goog-Upload-Command": "upload, finalize",
                    }
                ),
                timeout=self.upload_timeout,
            )
            raise_for_provider_status(finish)

        file_info = finish.json().get("file", {})
        if not file_info.get("name") or not file_info.get("uri"):
            raise ProviderError("Provider upload response missing file handle")

        logger.info(f"Uploaded {display_name} ({len(data)} bytes) as {file_info['name']}")
        return UploadedFile(
            name=file_info["name"],
            uri=file_info["uri"],
            mime_type=file_info.get("mimeType", mime_type),
            display_name=display_name,
        )

    @with_retry(max_attempts=3, base_delay=1.0, exceptions=(httpx.TransportError,))
    async def get_file_state(self, file: UploadedFile) -> FileState:
        async with self._session() as client:
            response = await client.get(
                f"{self.api_base}/v1beta/{file.name}",
                headers=self._headers(),
                timeout=30.0,
            )
        raise_for_provider_status(response)

        state = response.json().get("state", FileState.PROCESSING.value)
        try:
            return FileState(state)
        except ValueError:
            logger.warning(f"Unknown file state {state!r} for {file.name}")
            return FileState.PROCESSING

    async def generate(
        self,
        model_id: str,
        system_instruction: str,
        prompt: str,
        files: Sequence[UploadedFile],
    ) -> str:
        """
        Generate text from ready uploaded files.

        Raises:
            OverloadRetryError: Provider is out of capacity
            GenerationRetryError: The call timed out
            ProviderError: Any other provider failure
        """
        parts: List[Dict[str, Any]] = [
            {"file_data": {"mime_type": file.mime_type, "file_uri": file.uri}} for file in files
        ]
        parts.append({"text": prompt})

        body: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {"temperature": self.temperature},
        }
        if system_instruction:
            body["system_instruction"] = {"parts": [{"text": system_instruction}]}

        try:
            async with self._session() as client:
                response = await client.post(
                    f"{self.api_base}/v1beta/models/{model_id}:generateContent",
                    json=body,
                    headers=self._headers(),
                    timeout=self.generation_timeout,
                )
        except httpx.TimeoutException as e:
            raise GenerationRetryError(f"Generation timed out: {e}")

        raise_for_provider_status(response)
        return extract_text(response.json())

    async def delete_file(self, file: UploadedFile) -> None:
        async with self._session() as client:
            response = await client.delete(
                f"{self.api_base}/v1beta/{file.name}",
                headers=self._headers(),
                timeout=30.0,
            )
        if response.status_code != 404:
            raise_for_provider_status(response)


def create_provider() -> GeminiProvider:
    """
    Create a GeminiProvider using application settings.

    Returns:
        Configured GeminiProvider instance
    """
    from studyguide.config import get_settings

    settings = get_settings()
    return GeminiProvider(
        api_key=settings.gemini_api_key,
        api_base=settings.gemini_api_base,
        upload_timeout=settings.provider_upload_timeout_seconds,
        generation_timeout=settings.generation_timeout_seconds,
        temperature=settings.generation_temperature,
    )
