"""Per-access history of completed jobs."""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from studyguide.models.job import CamelModel, JobAccess, JobRecord
from studyguide.services.access import normalize_demo_code

logger = logging.getLogger(__name__)

HISTORY_TABLE = "job_history"
HISTORY_LIMIT = 50


class HistoryItem(CamelModel):
    """Summary of a completed job shown in the results list."""

    job_id: str
    created_at: datetime
    result_url: Optional[str] = None
    transcript_url: Optional[str] = None
    preview: Optional[str] = None
    model_id: Optional[str] = None


def history_key(access: JobAccess) -> Optional[str]:
    if access.mode == "admin":
        return "admin"
    if access.mode == "demo" and access.code:
        return f"demo:{normalize_demo_code(access.code)}"
    return None


def history_item(job: JobRecord) -> HistoryItem:
    return HistoryItem(
        job_id=job.id,
        created_at=job.created_at,
        result_url=job.result_url,
        transcript_url=job.transcript_url,
        preview=job.preview,
        model_id=job.request.model_id,
    )


def clamp_limit(limit: int) -> int:
    return max(1, min(limit, HISTORY_LIMIT))


@runtime_checkable
class JobHistory(Protocol):
    async def record(self, job: JobRecord) -> None:
        ...

    async def list(self, access: JobAccess, limit: int = 20) -> List[HistoryItem]:
        ...


class SupabaseJobHistory:
    """History rows in a Supabase ``job_history`` table, newest first."""

    def __init__(self, supabase_client: Any) -> None:
        self.supabase = supabase_client

    async def record(self, job: JobRecord) -> None:
        key = history_key(job.access)
        if key is None:
            return

        item = history_item(job)
        self.supabase.table(HISTORY_TABLE).insert(
            {
                "access_key": key,
                "job_id": job.id,
                "created_at": job.created_at.isoformat(),
                "payload": item.to_payload(),
            }
        ).execute()

    async def list(self, access: JobAccess, limit: int = 20) -> List[HistoryItem]:
        key = history_key(access)
        if key is None:
            return []

        result = (
            self.supabase.table(HISTORY_TABLE)
            .select("*")
            .eq("access_key", key)
            .order("created_at", desc=True)
            .limit(clamp_limit(limit))
            .execute()
        )

        items: List[HistoryItem] = []
        for row in result.data or []:
            try:
                items.append(HistoryItem.model_validate(row["payload"]))
            except Exception as e:
                logger.warning(f"Skipping unreadable history row {row.get('job_id')}: {e}")
        return items


class InMemoryJobHistory:
    """Process-local history for development and tests."""

    def __init__(self) -> None:
        self._items: Dict[str, List[HistoryItem]] = defaultdict(list)

    async def record(self, job: JobRecord) -> None:
        key = history_key(job.access)
        if key is None:
            return
        items = self._items[key]
        items.insert(0, history_item(job))
        del items[HISTORY_LIMIT:]

    async def list(self, access: JobAccess, limit: int = 20) -> List[HistoryItem]:
        key = history_key(access)
        if key is None:
            return []
        return list(self._items.get(key, [])[: clamp_limit(limit)])


def create_job_history() -> JobHistory:
    from studyguide.config import get_settings

    settings = get_settings()
    if settings.job_store_backend == "memory":
        return InMemoryJobHistory()

    from supabase import create_client

    return SupabaseJobHistory(create_client(settings.supabase_url, settings.supabase_key))
