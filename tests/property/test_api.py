"""Tests for the HTTP surface of the API and worker services.

Every error leaves the service as ``{error: {code, message}}`` with a status
code derived from the error kind.
"""

import asyncio
from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient
from hypothesis import given, settings, strategies as st

from conftest import ADMIN_PASSWORD, DEMO_CODE, RecordingWorker
from studyguide.api.deps import (
    get_access_gate,
    get_dispatcher,
    get_job_history,
    get_object_store,
    get_settings_dep,
    get_worker_pipeline,
)
from studyguide.api.routes import STATUS_BY_KIND
from studyguide.config import Settings
from studyguide.main import create_app
from studyguide.models.job import JobAccess, JobRecord, JobRequest, JobStatus
from studyguide.services.dispatcher import InlineWorkerDispatcher
from studyguide.utils.errors import DispatchFailedError, ErrorKind
from studyguide.worker import create_worker_app

WORKER_SECRET = "worker-secret"

ADMIN_HEADERS = {"Authorization": f"Bearer {ADMIN_PASSWORD}"}

AUDIO = {"objectName": "uploads/j/a.mp3", "mimeType": "audio/mpeg"}


def _settings(**overrides: Any) -> Settings:
    options: Dict[str, Any] = {
        "_env_file": None,
        "admin_password": ADMIN_PASSWORD,
        "worker_shared_secret": WORKER_SECRET,
        "max_upload_bytes": 1000,
        "signed_url_ttl_seconds": 900,
    }
    options.update(overrides)
    return Settings(**options)


@pytest.fixture
def make_client(make_dispatcher, gate, object_store, history):
    def factory(worker: Any, **client_options: Any) -> TestClient:
        app = create_app()
        dispatcher = make_dispatcher(worker)
        app.dependency_overrides[get_dispatcher] = lambda: dispatcher
        app.dependency_overrides[get_access_gate] = lambda: gate
        app.dependency_overrides[get_object_store] = lambda: object_store
        app.dependency_overrides[get_job_history] = lambda: history
        app.dependency_overrides[get_settings_dep] = lambda: _settings()
        return TestClient(app, **client_options)

    return factory


@pytest.fixture
def client(make_client, pipeline) -> TestClient:
    return make_client(InlineWorkerDispatcher(pipeline))


class TestErrorMapping:
    def test_every_transient_kind_has_a_retryable_status(self) -> None:
        assert STATUS_BY_KIND[ErrorKind.DISPATCH_FAILED] == 502
        assert STATUS_BY_KIND[ErrorKind.OVERLOAD_RETRY] == 503
        assert STATUS_BY_KIND[ErrorKind.GENERATION_RETRY] == 503

    @settings(max_examples=50, deadline=None)
    @given(
        body=st.one_of(
            st.integers(),
            st.lists(st.integers(), max_size=3),
            st.fixed_dictionaries({"audio": st.fixed_dictionaries({"objectName": st.just("")})}),
            st.fixed_dictionaries({"slides": st.integers()}),
        )
    )
    def test_malformed_process_body_is_invalid_payload(self, body: Any) -> None:
        app = create_app()
        app.dependency_overrides[get_dispatcher] = lambda: None
        client = TestClient(app)

        response = client.post("/api/process", json=body)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_payload"

    def test_unhandled_error_hides_detail(self, make_client) -> None:
        class ExplodingHistory:
            async def list(self, access: JobAccess, limit: int = 20) -> list:
                raise RuntimeError("secret connection string")

        client = make_client(RecordingWorker(), raise_server_exceptions=False)
        client.app.dependency_overrides[get_job_history] = lambda: ExplodingHistory()

        response = client.get("/api/results", headers=ADMIN_HEADERS)

        assert response.status_code == 500
        assert response.json() == {
            "error": {"code": "internal_error", "message": "Processing failed. Please retry."}
        }


class TestProcessEndpoints:
    def test_create_returns_job_id(self, client: TestClient) -> None:
        response = client.post("/api/process", json={"audio": AUDIO}, headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert set(response.json()) == {"jobId"}

    def test_create_without_credentials(self, client: TestClient) -> None:
        response = client.post("/api/process", json={"audio": AUDIO})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "missing_access_code"

    def test_create_without_media(self, client: TestClient) -> None:
        response = client.post("/api/process", json={"slides": []}, headers=ADMIN_HEADERS)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_payload"

    def test_create_outside_upload_namespace(self, client: TestClient) -> None:
        audio = {"objectName": "results/other/study-guide.md", "mimeType": "audio/mpeg"}

        response = client.post("/api/process", json={"audio": audio}, headers=ADMIN_HEADERS)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_object_name"

    def test_run_to_completion_returns_200(self, client: TestClient) -> None:
        job_id = client.post(
            "/api/process", json={"audio": AUDIO, "demoCode": DEMO_CODE}
        ).json()["jobId"]

        response = client.post("/api/process/run", json={"jobId": job_id, "demoCode": DEMO_CODE})

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "completed"
        assert body["progress"] == 100
        assert body["preview"].startswith("# Week 1")

    def test_run_in_flight_returns_202(self, make_client) -> None:
        client = make_client(RecordingWorker())
        job_id = client.post("/api/process", json={"audio": AUDIO}, headers=ADMIN_HEADERS).json()[
            "jobId"
        ]

        response = client.post("/api/process/run", json={"jobId": job_id}, headers=ADMIN_HEADERS)

        assert response.status_code == 202
        assert response.json()["status"] == "processing"
        assert response.json()["stage"] == "dispatching"

    def test_failed_dispatch_returns_502_with_requeued_job(self, make_client) -> None:
        client = make_client(RecordingWorker(error=DispatchFailedError()))
        job_id = client.post("/api/process", json={"audio": AUDIO}, headers=ADMIN_HEADERS).json()[
            "jobId"
        ]

        response = client.post("/api/process/run", json={"jobId": job_id}, headers=ADMIN_HEADERS)

        assert response.status_code == 502
        body = response.json()
        assert body["status"] == "queued"
        assert body["error"]["code"] == "dispatch_failed"

    def test_unexpected_dispatch_error_requeues(self, make_client) -> None:
        client = make_client(RecordingWorker(error=RuntimeError("worker exploded")))
        job_id = client.post("/api/process", json={"audio": AUDIO}, headers=ADMIN_HEADERS).json()[
            "jobId"
        ]

        response = client.post("/api/process/run", json={"jobId": job_id}, headers=ADMIN_HEADERS)

        assert response.status_code == 502
        assert response.json()["status"] == "queued"
        assert "worker exploded" not in response.text

    def test_run_without_job_id(self, client: TestClient) -> None:
        response = client.post("/api/process/run", json={}, headers=ADMIN_HEADERS)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "missing_job_id"

    def test_status_is_not_cached(self, client: TestClient) -> None:
        job_id = client.post("/api/process", json={"audio": AUDIO}, headers=ADMIN_HEADERS).json()[
            "jobId"
        ]

        response = client.get("/api/process/status", params={"jobId": job_id}, headers=ADMIN_HEADERS)

        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-store"
        assert response.json()["status"] == "queued"

    def test_status_of_unknown_job(self, client: TestClient) -> None:
        response = client.get("/api/process/status", params={"jobId": "nope"}, headers=ADMIN_HEADERS)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "job_not_found"

    def test_status_with_another_demo_code(self, client: TestClient, ledger) -> None:
        ledger.codes["OTHER"] = 1
        job_id = client.post(
            "/api/process", json={"audio": AUDIO, "demoCode": DEMO_CODE}
        ).json()["jobId"]

        response = client.get(
            "/api/process/status", params={"jobId": job_id, "demoCode": "OTHER"}
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "access_denied"


class TestUploadEndpoint:
    def test_issues_signed_url_under_upload_prefix(self, client: TestClient) -> None:
        response = client.post(
            "/api/uploads",
            json={"filename": "lecture 1.mp3", "mimeType": "audio/mpeg", "demoCode": DEMO_CODE},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["objectName"].startswith(f"uploads/{DEMO_CODE}/")
        assert body["objectName"].endswith("-lecture_1.mp3")
        assert body["uploadUrl"].startswith("memory://test-bucket/uploads/")
        assert body["expiresIn"] == 900
        assert response.headers["cache-control"] == "no-store"

    def test_upload_does_not_consume_quota(self, client: TestClient, ledger) -> None:
        client.post(
            "/api/uploads",
            json={"filename": "a.mp3", "mimeType": "audio/mpeg", "demoCode": DEMO_CODE},
        )

        assert ledger.codes[DEMO_CODE] == 3

    def test_oversized_upload(self, client: TestClient) -> None:
        response = client.post(
            "/api/uploads",
            json={"filename": "a.mp3", "mimeType": "audio/mpeg", "sizeBytes": 1001},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 413
        assert response.json()["error"]["code"] == "file_too_large"

    def test_unknown_demo_code(self, client: TestClient) -> None:
        response = client.post(
            "/api/uploads",
            json={"filename": "a.mp3", "mimeType": "audio/mpeg", "demoCode": "NOPE"},
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_access_code"


class TestDeleteUploadsEndpoint:
    def test_demo_code_deletes_uploads(self, client: TestClient, object_store) -> None:
        response = client.post(
            "/api/uploads/delete",
            json={"objects": ["uploads/j/a.mp3", "uploads/j/gone.mp3"], "demoCode": DEMO_CODE},
        )

        assert response.status_code == 200
        assert response.json() == {"deleted": 2}
        assert "uploads/j/a.mp3" not in object_store.objects
        assert "uploads/j/slides.pdf" in object_store.objects

    def test_exhausted_demo_code_may_clean_up(self, client: TestClient, ledger, object_store) -> None:
        ledger.codes[DEMO_CODE] = 0

        response = client.post(
            "/api/uploads/delete", json={"objects": ["uploads/j/a.mp3"], "demoCode": DEMO_CODE}
        )

        assert response.status_code == 200
        assert object_store.objects.keys() == {"uploads/j/slides.pdf"}

    def test_requires_objects(self, client: TestClient) -> None:
        response = client.post("/api/uploads/delete", json={"objects": []}, headers=ADMIN_HEADERS)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_payload"

    @pytest.mark.parametrize("headers, body", [
        ({}, {"objects": ["uploads/j/a.mp3"]}),
        ({}, {"objects": ["uploads/j/a.mp3"], "demoCode": "NOPE"}),
        ({"Authorization": "Bearer wrong"}, {"objects": ["uploads/j/a.mp3"]}),
    ])
    def test_rejects_unauthorized_callers(self, client: TestClient, object_store, headers, body) -> None:
        response = client.post("/api/uploads/delete", json=body, headers=headers)

        assert response.status_code == 401
        assert "uploads/j/a.mp3" in object_store.objects

    def test_names_outside_namespace_delete_nothing(self, client: TestClient, object_store) -> None:
        object_store.objects["results/j/study-guide.md"] = (b"# Guide", "text/markdown")

        response = client.post(
            "/api/uploads/delete",
            json={"objects": ["uploads/j/a.mp3", "results/j/study-guide.md"]},
            headers=ADMIN_HEADERS,
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_object_name"
        assert "uploads/j/a.mp3" in object_store.objects
        assert "results/j/study-guide.md" in object_store.objects


class TestResultsEndpoint:
    def test_lists_completed_jobs_for_the_caller(self, client: TestClient) -> None:
        job_id = client.post(
            "/api/process", json={"audio": AUDIO, "demoCode": DEMO_CODE}
        ).json()["jobId"]
        client.post("/api/process/run", json={"jobId": job_id, "demoCode": DEMO_CODE})

        response = client.get("/api/results", params={"demoCode": DEMO_CODE.lower()})

        assert response.status_code == 200
        [item] = response.json()["items"]
        assert item["jobId"] == job_id
        assert item["preview"].startswith("# Week 1")

        admin = client.get("/api/results", headers=ADMIN_HEADERS)
        assert admin.json()["items"] == []

    @pytest.mark.parametrize("limit", [0, 51])
    def test_limit_out_of_range(self, client: TestClient, limit: int) -> None:
        response = client.get("/api/results", params={"limit": limit}, headers=ADMIN_HEADERS)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_payload"


class TestWorkerApp:
    @pytest.fixture
    def worker_client(self, pipeline, store) -> TestClient:
        app = create_worker_app()
        app.dependency_overrides[get_worker_pipeline] = lambda: pipeline
        app.dependency_overrides[get_settings_dep] = lambda: _settings()
        return TestClient(app)

    @staticmethod
    def _queued_job(store) -> str:
        job = JobRecord(
            request=JobRequest.model_validate({"audio": AUDIO}),
            access=JobAccess(mode="admin"),
        )
        asyncio.run(store.put(job))
        return job.id

    def test_health(self, worker_client: TestClient) -> None:
        assert worker_client.get("/health").json() == {"status": "ok"}

    @pytest.mark.parametrize("header", [None, "Bearer wrong", f"Basic {WORKER_SECRET}"])
    def test_rejects_missing_or_wrong_secret(self, worker_client: TestClient, header) -> None:
        headers = {"Authorization": header} if header else {}

        response = worker_client.post("/worker/run", json={"jobId": "x"}, headers=headers)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_missing_job_id(self, worker_client: TestClient) -> None:
        response = worker_client.post(
            "/worker/run", json={}, headers={"Authorization": f"Bearer {WORKER_SECRET}"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "missing_job_id"

    def test_unknown_job(self, worker_client: TestClient) -> None:
        response = worker_client.post(
            "/worker/run",
            json={"jobId": "missing"},
            headers={"Authorization": f"Bearer {WORKER_SECRET}"},
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "job_not_found"

    def test_runs_job_to_completion(self, worker_client: TestClient, store) -> None:
        job_id = self._queued_job(store)

        response = worker_client.post(
            "/worker/run",
            json={"jobId": job_id},
            headers={"Authorization": f"Bearer {WORKER_SECRET}"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == JobStatus.COMPLETED.value
        assert response.json()["transcriptUrl"].endswith(f"results/{job_id}/transcript.txt?method=GET&expires=600")
