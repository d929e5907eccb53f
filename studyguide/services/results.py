"""Generated result parsing and persistence."""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from studyguide.services.object_store import (
    ObjectStore,
    build_result_object_name,
    build_transcript_object_name,
)

logger = logging.getLogger(__name__)

STUDY_GUIDE_SEPARATOR = "===STUDY_GUIDE==="
TRANSCRIPT_SEPARATOR = "===TRANSCRIPT==="
SLIDES_SEPARATOR = "===SLIDES==="
RAW_NOTES_SEPARATOR = "===RAW_NOTES==="

SEPARATORS = (STUDY_GUIDE_SEPARATOR, TRANSCRIPT_SEPARATOR, SLIDES_SEPARATOR, RAW_NOTES_SEPARATOR)

PREVIEW_MAX_CHARS = 2000

_FENCE_START = re.compile(r"^```(?:markdown)?\s*")
_FENCE_END = re.compile(r"\s*```$")


@dataclass(frozen=True)
class ParsedResult:
    study_guide: str
    transcript: Optional[str]
    slides: Optional[str] = None
    raw_notes: Optional[str] = None


def _section(text: str, separator: str, search_from: int = 0) -> Optional[str]:
    """Text between ``separator`` and the next separator, or None if absent."""
    start = text.find(separator, search_from)
    if start == -1:
        return None

    body_start = start + len(separator)
    ends = [idx for idx in (text.find(sep, body_start) for sep in SEPARATORS) if idx != -1]
    end = min(ends) if ends else len(text)
    return text[body_start:end].strip()


def _strip_fences(text: str) -> str:
    return _FENCE_END.sub("", _FENCE_START.sub("", text.strip())).strip()


def extract_transcript(text: str) -> Optional[str]:
    """
    Return the transcript section, or None if it is missing or empty.

    The transcript separator must come after the study guide separator when
    the latter is present.
    """
    guide_idx = text.find(STUDY_GUIDE_SEPARATOR)
    search_from = guide_idx + len(STUDY_GUIDE_SEPARATOR) if guide_idx != -1 else 0
    transcript = _section(text, TRANSCRIPT_SEPARATOR, search_from)
    return transcript or None


def parse_result_text(text: str) -> ParsedResult:
    """Split provider output on the fixed separator tokens."""
    guide = _section(text, STUDY_GUIDE_SEPARATOR)
    if guide is None:
        first_sep = [idx for idx in (text.find(sep) for sep in SEPARATORS) if idx != -1]
        guide = text[: min(first_sep)] if first_sep else text

    return ParsedResult(
        study_guide=_strip_fences(guide),
        transcript=extract_transcript(text),
        slides=_section(text, SLIDES_SEPARATOR),
        raw_notes=_section(text, RAW_NOTES_SEPARATOR),
    )


def build_preview(text: str, max_chars: int = PREVIEW_MAX_CHARS) -> str:
    if not text:
        return ""
    return text[:max_chars].strip()


@dataclass(frozen=True)
class StoredResult:
    result_url: Optional[str]
    transcript_url: Optional[str]


class ResultStorage:
    """Writes generated artifacts to the object store and signs read URLs."""

    def __init__(self, object_store: ObjectStore, url_ttl_seconds: int = 3600) -> None:
        self.object_store = object_store
        self.url_ttl_seconds = url_ttl_seconds

    async def store_result_markdown(self, content: str, job_id: str) -> Optional[str]:
        if not content:
            return None
        name = build_result_object_name(job_id)
        await self.object_store.write_bytes(name, content.encode("utf-8"), "text/markdown")
        return await self.object_store.signed_read_url(name, self.url_ttl_seconds)

    async def store_transcript_text(self, content: Optional[str], job_id: str) -> Optional[str]:
        if not content:
            return None
        name = build_transcript_object_name(job_id)
        await self.object_store.write_bytes(name, content.encode("utf-8"), "text/plain")
        return await self.object_store.signed_read_url(name, self.url_ttl_seconds)

    async def store(self, text: str, parsed: ParsedResult, job_id: str) -> StoredResult:
        result_url = await self.store_result_markdown(text, job_id)
        transcript_url = await self.store_transcript_text(parsed.transcript, job_id)
        logger.info(f"Stored results for job {job_id}")
        return StoredResult(result_url=result_url, transcript_url=transcript_url)
