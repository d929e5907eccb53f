"""FastAPI dependencies for the study guide API and worker."""

from functools import lru_cache

from studyguide.config import Settings, get_settings
from studyguide.services.access import AccessGate, create_access_gate
from studyguide.services.dispatcher import (
    Dispatcher,
    InlineWorkerDispatcher,
    create_dispatcher,
    create_worker_dispatcher,
)
from studyguide.services.history import JobHistory, create_job_history
from studyguide.services.job_store import JobStore, create_job_store
from studyguide.services.object_store import ObjectStore, create_object_store
from studyguide.services.pipeline import WorkerPipeline, create_worker_pipeline


def get_settings_dep() -> Settings:
    """Dependency for application settings."""
    return get_settings()


@lru_cache
def get_job_store() -> JobStore:
    """Dependency for the shared job record store."""
    return create_job_store()


@lru_cache
def get_object_store() -> ObjectStore:
    """Dependency for the shared object store."""
    return create_object_store()


@lru_cache
def get_job_history() -> JobHistory:
    """Dependency for the shared job history."""
    return create_job_history()


@lru_cache
def get_access_gate() -> AccessGate:
    """Dependency for the access gate."""
    return create_access_gate()


@lru_cache
def get_worker_pipeline() -> WorkerPipeline:
    """Dependency for the worker pipeline, wired to the shared stores."""
    return create_worker_pipeline(
        store=get_job_store(),
        object_store=get_object_store(),
        history=get_job_history(),
    )


@lru_cache
def get_dispatcher() -> Dispatcher:
    """Dependency for the dispatcher; local mode runs the pipeline inline."""
    settings = get_settings()
    if settings.dispatch_mode == "remote":
        worker = create_worker_dispatcher()
    else:
        worker = InlineWorkerDispatcher(get_worker_pipeline(), detach=True)

    return create_dispatcher(
        store=get_job_store(),
        access_gate=get_access_gate(),
        worker=worker,
    )


def reset_dependencies() -> None:
    """Drop cached services (used by tests after changing settings)."""
    for provider in (
        get_job_store,
        get_object_store,
        get_job_history,
        get_access_gate,
        get_worker_pipeline,
        get_dispatcher,
    ):
        provider.cache_clear()
