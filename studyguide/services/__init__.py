"""Service layer for the study guide generator."""

from studyguide.services.access import DemoCodeAccessGate, create_access_gate
from studyguide.services.dispatcher import Dispatcher, create_dispatcher
from studyguide.services.history import InMemoryJobHistory, SupabaseJobHistory, create_job_history
from studyguide.services.job_store import InMemoryJobStore, SupabaseJobStore, create_job_store
from studyguide.services.object_store import GcsObjectStore, InMemoryObjectStore, create_object_store
from studyguide.services.pipeline import WorkerPipeline, create_worker_pipeline
from studyguide.services.poller import JobPoller, ProcessApiClient
from studyguide.services.provider import GeminiProvider, create_provider

__all__ = [
    "DemoCodeAccessGate",
    "create_access_gate",
    "Dispatcher",
    "create_dispatcher",
    "InMemoryJobHistory",
    "SupabaseJobHistory",
    "create_job_history",
    "InMemoryJobStore",
    "SupabaseJobStore",
    "create_job_store",
    "GcsObjectStore",
    "InMemoryObjectStore",
    "create_object_store",
    "WorkerPipeline",
    "create_worker_pipeline",
    "JobPoller",
    "ProcessApiClient",
    "GeminiProvider",
    "create_provider",
]
