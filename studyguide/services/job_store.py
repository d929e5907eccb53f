"""Job record store: durable, TTL-bounded job state on Supabase or in memory."""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Protocol, Tuple, runtime_checkable

from pydantic import TypeAdapter

from studyguide.models.job import JobRecord
from studyguide.utils.clock import Clock, system_clock
from studyguide.utils.errors import JobNotFoundError, JobStoreError
from studyguide.utils.retry import retry_async

logger = logging.getLogger(__name__)

JOBS_TABLE = "jobs"

# PostgREST timestamptz values may carry any number of fractional digits.
TIMESTAMP = TypeAdapter(datetime)


@runtime_checkable
class JobStore(Protocol):
    """Contract for job persistence.

    Writes are last-writer-wins; there is no compare-and-swap token.
    """

    async def put(self, record: JobRecord) -> None:
        """Write the full record and refresh its TTL."""
        ...

    async def get(self, job_id: str) -> Optional[JobRecord]:
        """Return the record, or None if absent or expired."""
        ...

    async def patch(self, job_id: str, partial: Dict[str, Any]) -> JobRecord:
        """Read-merge-write ``partial`` into the record and refresh ``updated_at``.

        Raises:
            JobNotFoundError: If the record does not exist
        """
        ...


class BaseJobStore:
    """Shared patch/TTL logic; subclasses implement raw reads and writes."""

    def __init__(
        self,
        ttl_seconds: int = 60 * 60 * 24,
        write_attempts: int = 2,
        clock: Clock = system_clock,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.write_attempts = write_attempts
        self.clock = clock

    def _expires_at(self) -> datetime:
        return self.clock.now() + timedelta(seconds=self.ttl_seconds)

    async def _write(self, record: JobRecord, expires_at: datetime) -> None:
        raise NotImplementedError

    async def put(self, record: JobRecord) -> None:
        expires_at = self._expires_at()
        try:
            await retry_async(
                lambda: self._write(record, expires_at),
                max_attempts=self.write_attempts,
                base_delay=0,
            )
        except JobStoreError:
            raise
        except Exception as e:
            raise JobStoreError(f"Failed to write job {record.id}: {e}")

    async def get(self, job_id: str) -> Optional[JobRecord]:
        raise NotImplementedError

    async def patch(self, job_id: str, partial: Dict[str, Any]) -> JobRecord:
        existing = await self.get(job_id)
        if existing is None:
            raise JobNotFoundError()

        updated = existing.merged({**partial, "updated_at": self.clock.now()})
        await self.put(updated)
        return updated


class SupabaseJobStore(BaseJobStore):
    """Job store backed by a Supabase ``jobs`` table.

    Each row holds the full record as JSON plus an ``expires_at`` column that
    is pushed forward on every write; expired rows read as absent and are
    swept by a scheduled database job.
    """

    def __init__(
        self,
        supabase_client: Any,
        ttl_seconds: int = 60 * 60 * 24,
        write_attempts: int = 2,
        clock: Clock = system_clock,
    ) -> None:
        """
        Initialize the SupabaseJobStore.

        Args:
            supabase_client: Supabase client instance
            ttl_seconds: Retention window applied on every write
            write_attempts: Attempts per write before surfacing an error
            clock: Time source for TTL and ``updated_at``
        """
        super().__init__(ttl_seconds=ttl_seconds, write_attempts=write_attempts, clock=clock)
        self.supabase = supabase_client

    async def _write(self, record: JobRecord, expires_at: datetime) -> None:
        row = {
            "job_id": record.id,
            "payload": record.to_payload(),
            "status": record.status.value,
            "updated_at": record.updated_at.isoformat(),
            "expires_at": expires_at.isoformat(),
        }

        result = self.supabase.table(JOBS_TABLE).upsert(row).execute()

        if not result.data:
            raise JobStoreError(f"Failed to upsert job {record.id}")

    async def get(self, job_id: str) -> Optional[JobRecord]:
        try:
            result = self.supabase.table(JOBS_TABLE).select("*").eq("job_id", job_id).execute()
        except Exception as e:
            raise JobStoreError(f"Failed to read job {job_id}: {e}")

        if not result.data:
            return None

        row = result.data[0]
        expires_at = row.get("expires_at")
        if expires_at and TIMESTAMP.validate_python(expires_at) <= self.clock.now():
            logger.debug(f"Job {job_id} expired at {expires_at}")
            return None

        return JobRecord.model_validate(row["payload"])


class InMemoryJobStore(BaseJobStore):
    """Process-local job store for development and tests."""

    def __init__(
        self,
        ttl_seconds: int = 60 * 60 * 24,
        write_attempts: int = 2,
        clock: Clock = system_clock,
    ) -> None:
        super().__init__(ttl_seconds=ttl_seconds, write_attempts=write_attempts, clock=clock)
        self._rows: Dict[str, Tuple[Dict[str, Any], datetime]] = {}

    async def _write(self, record: JobRecord, expires_at: datetime) -> None:
        self._rows[record.id] = (record.model_dump(mode="json"), expires_at)

    async def get(self, job_id: str) -> Optional[JobRecord]:
        row = self._rows.get(job_id)
        if row is None:
            return None

        payload, expires_at = row
        if expires_at <= self.clock.now():
            del self._rows[job_id]
            return None

        return JobRecord.model_validate(payload)

    def expires_at(self, job_id: str) -> Optional[datetime]:
        row = self._rows.get(job_id)
        return row[1] if row else None


def create_job_store(clock: Clock = system_clock) -> BaseJobStore:
    """
    Create a JobStore using application settings.

    Returns:
        Configured Supabase or in-memory job store
    """
    from studyguide.config import get_settings

    settings = get_settings()

    if settings.job_store_backend == "memory":
        return InMemoryJobStore(
            ttl_seconds=settings.job_ttl_seconds,
            write_attempts=settings.job_store_write_attempts,
            clock=clock,
        )

    from supabase import create_client

    supabase_client = create_client(settings.supabase_url, settings.supabase_key)
    return SupabaseJobStore(
        supabase_client=supabase_client,
        ttl_seconds=settings.job_ttl_seconds,
        write_attempts=settings.job_store_write_attempts,
        clock=clock,
    )
