"""Pytest fixtures and fakes for study guide tests."""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import pytest

from studyguide.models.job import FileRef, UploadedFile
from studyguide.services.access import DemoCodeAccessGate, InMemoryDemoCodeLedger
from studyguide.services.dispatcher import Dispatcher, InlineWorkerDispatcher
from studyguide.services.history import InMemoryJobHistory
from studyguide.services.job_store import InMemoryJobStore
from studyguide.services.object_store import InMemoryObjectStore
from studyguide.services.pipeline import WorkerPipeline
from studyguide.services.provider import FileState
from studyguide.services.results import ResultStorage

ADMIN_PASSWORD = "admin-secret"
DEMO_CODE = "DEMO-2024"
SYSTEM_PROMPT = "You are a careful teaching assistant.\n\nBEGIN NOW"
GENERATED_TEXT = "===STUDY_GUIDE===\n# Week 1\nKey ideas\n===TRANSCRIPT===\nHello class"


# ==================== Fakes ====================


class FakeClock:
    """Deterministic clock; ``sleep`` advances time instead of waiting."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.current = start or datetime(2024, 9, 2, 9, 0, tzinfo=timezone.utc)
        self.elapsed = 0.0
        self.sleeps: List[float] = []

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.elapsed

    def advance(self, seconds: float) -> None:
        self.elapsed += seconds
        self.current += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


class FakeProvider:
    """Generative provider double that records every call."""

    def __init__(
        self,
        text: str = GENERATED_TEXT,
        states: Optional[List[FileState]] = None,
        generate_error: Optional[Exception] = None,
        upload_error: Optional[Exception] = None,
    ) -> None:
        self.text = text
        self.states = states or [FileState.ACTIVE]
        self.generate_error = generate_error
        self.upload_error = upload_error
        self.uploads: List[str] = []
        self.state_checks = 0
        self.generate_calls: List[Dict[str, Any]] = []
        self.deleted: List[str] = []

    async def upload_file(self, data: bytes, mime_type: str, display_name: str) -> UploadedFile:
        if self.upload_error is not None:
            raise self.upload_error
        self.uploads.append(display_name)
        index = len(self.uploads)
        return UploadedFile(
            name=f"files/f{index}",
            uri=f"https://provider.test/files/f{index}",
            mime_type=mime_type,
            display_name=display_name,
        )

    async def get_file_state(self, file: UploadedFile) -> FileState:
        self.state_checks += 1
        # One state per check; the last state repeats.
        return self.states[min(self.state_checks - 1, len(self.states) - 1)]

    async def generate(
        self,
        model_id: str,
        system_instruction: str,
        prompt: str,
        files: Sequence[UploadedFile],
    ) -> str:
        self.generate_calls.append(
            {"model_id": model_id, "system_instruction": system_instruction, "files": list(files)}
        )
        if self.generate_error is not None:
            raise self.generate_error
        return self.text

    async def delete_file(self, file: UploadedFile) -> None:
        self.deleted.append(file.name)


class RecordingWorker:
    """Worker dispatcher double that counts dispatches."""

    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.dispatched: List[str] = []

    async def dispatch(self, job_id: str) -> None:
        self.dispatched.append(job_id)
        if self.error is not None:
            raise self.error


# ==================== Mock Supabase Client ====================


class MockSupabaseResponse:
    """Mock response from Supabase operations."""

    def __init__(self, data: Optional[List[Dict[str, Any]]] = None) -> None:
        self.data = data or []


class MockSupabaseTable:
    """Mock Supabase table supporting the query chains the services use."""

    def __init__(self, pk_field: str) -> None:
        self.pk_field = pk_field
        self._data: List[Dict[str, Any]] = []
        self._reset_query()
        self.fail_writes = 0

    def _reset_query(self) -> None:
        self._filters: List[tuple] = []
        self._limit_value: Optional[int] = None
        self._order: Optional[tuple] = None
        self._pending: Optional[tuple] = None

    def select(self, columns: str = "*") -> "MockSupabaseTable":
        return self

    def insert(self, data: Dict[str, Any]) -> "MockSupabaseTable":
        self._pending = ("insert", data)
        return self

    def upsert(self, data: Dict[str, Any]) -> "MockSupabaseTable":
        self._pending = ("upsert", data)
        return self

    def update(self, data: Dict[str, Any]) -> "MockSupabaseTable":
        self._pending = ("update", data)
        return self

    def eq(self, field: str, value: Any) -> "MockSupabaseTable":
        self._filters.append((field, value))
        return self

    def order(self, field: str, desc: bool = False) -> "MockSupabaseTable":
        self._order = (field, desc)
        return self

    def limit(self, count: int) -> "MockSupabaseTable":
        self._limit_value = count
        return self

    def _matches(self, row: Dict[str, Any]) -> bool:
        return all(row.get(field) == value for field, value in self._filters)

    def execute(self) -> MockSupabaseResponse:
        pending = self._pending
        try:
            if pending is not None and self.fail_writes > 0:
                self.fail_writes -= 1
                raise ConnectionError("simulated write failure")

            if pending is not None:
                action, data = pending
                if action == "insert":
                    self._data.append(dict(data))
                    return MockSupabaseResponse([dict(data)])
                if action == "upsert":
                    self._data = [
                        row for row in self._data if row.get(self.pk_field) != data.get(self.pk_field)
                    ]
                    self._data.append(dict(data))
                    return MockSupabaseResponse([dict(data)])
                updated = []
                for row in self._data:
                    if self._matches(row):
                        row.update(data)
                        updated.append(dict(row))
                return MockSupabaseResponse(updated)

            rows = [dict(row) for row in self._data if self._matches(row)]
            if self._order:
                field, desc = self._order
                rows.sort(key=lambda row: row.get(field), reverse=desc)
            if self._limit_value is not None:
                rows = rows[: self._limit_value]
            return MockSupabaseResponse(rows)
        finally:
            self._reset_query()


class MockSupabaseClient:
    """Mock Supabase client for testing."""

    PK_FIELDS = {"jobs": "job_id", "demo_codes": "code", "job_history": "job_id"}

    def __init__(self) -> None:
        self._tables: Dict[str, MockSupabaseTable] = {}

    def table(self, name: str) -> MockSupabaseTable:
        if name not in self._tables:
            self._tables[name] = MockSupabaseTable(self.PK_FIELDS.get(name, "id"))
        return self._tables[name]

    def get_all_records(self, table_name: str) -> List[Dict[str, Any]]:
        if table_name in self._tables:
            return list(self._tables[table_name]._data)
        return []


# ==================== Fixtures ====================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryJobStore:
    return InMemoryJobStore(ttl_seconds=3600, write_attempts=2, clock=clock)


@pytest.fixture
def object_store() -> InMemoryObjectStore:
    objects = InMemoryObjectStore(bucket_name="test-bucket")
    objects.objects["uploads/j/a.mp3"] = (b"ID3 audio", "audio/mpeg")
    objects.objects["uploads/j/slides.pdf"] = (b"%PDF slides", "application/pdf")
    return objects


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def history() -> InMemoryJobHistory:
    return InMemoryJobHistory()


@pytest.fixture
def ledger() -> InMemoryDemoCodeLedger:
    return InMemoryDemoCodeLedger({DEMO_CODE: 3})


@pytest.fixture
def gate(ledger: InMemoryDemoCodeLedger) -> DemoCodeAccessGate:
    return DemoCodeAccessGate(ADMIN_PASSWORD, ledger)


@pytest.fixture
def make_pipeline(
    store: InMemoryJobStore,
    object_store: InMemoryObjectStore,
    history: InMemoryJobHistory,
    clock: FakeClock,
) -> Callable[..., WorkerPipeline]:
    def factory(provider: FakeProvider, **overrides: Any) -> WorkerPipeline:
        options: Dict[str, Any] = {
            "store": store,
            "object_store": object_store,
            "provider": provider,
            "results": ResultStorage(object_store, url_ttl_seconds=600),
            "system_instruction": SYSTEM_PROMPT,
            "default_model_id": "gemini-2.5-flash",
            "history": history,
            "poll_interval": 2.0,
            "poll_timeout": 30.0,
            "clock": clock,
        }
        options.update(overrides)
        return WorkerPipeline(**options)

    return factory


@pytest.fixture
def pipeline(make_pipeline: Callable[..., WorkerPipeline], provider: FakeProvider) -> WorkerPipeline:
    return make_pipeline(provider)


@pytest.fixture
def make_dispatcher(
    store: InMemoryJobStore, gate: DemoCodeAccessGate, clock: FakeClock
) -> Callable[..., Dispatcher]:
    def factory(worker: Any, **overrides: Any) -> Dispatcher:
        options: Dict[str, Any] = {
            "store": store,
            "access_gate": gate,
            "worker": worker,
            "allowed_model_ids": ["gemini-2.5-flash", "gemini-2.5-pro"],
            "premium_model_ids": ["gemini-2.5-pro"],
            "default_model_id": "gemini-2.5-flash",
            "stale_after_seconds": 1800,
            "clock": clock,
        }
        options.update(overrides)
        return Dispatcher(**options)

    return factory


@pytest.fixture
def dispatcher(
    make_dispatcher: Callable[..., Dispatcher], pipeline: WorkerPipeline
) -> Dispatcher:
    """Dispatcher that runs the pipeline inline and waits for it."""
    return make_dispatcher(InlineWorkerDispatcher(pipeline))


@pytest.fixture
def audio_ref() -> FileRef:
    return FileRef(object_name="uploads/j/a.mp3", mime_type="audio/mpeg")


@pytest.fixture
def slide_ref() -> FileRef:
    return FileRef(object_name="uploads/j/slides.pdf", mime_type="application/pdf")
