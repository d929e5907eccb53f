"""
Worker service: runs the generation pipeline for one job per request.

The API service posts ``{jobId}`` here with the shared secret as a bearer
token. The response is the job snapshot after the pipeline finished, was
requeued, or failed.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, Header
from fastapi.responses import JSONResponse

from studyguide.api.deps import get_settings_dep, get_worker_pipeline
from studyguide.api.routes import register_exception_handlers
from studyguide.bootstrap import configure_runtime
from studyguide.config import Settings, get_settings
from studyguide.models.job import CamelModel
from studyguide.services.access import parse_bearer_token, tokens_match
from studyguide.services.pipeline import WorkerPipeline
from studyguide.utils.errors import AccessError, MissingJobIdError

logger = logging.getLogger(__name__)


class WorkerRunRequest(CamelModel):
    job_id: Optional[str] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_runtime()
    yield


def create_worker_app() -> FastAPI:
    app = FastAPI(title="Lecture Study Guide Worker", lifespan=lifespan)
    register_exception_handlers(app)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.post("/worker/run")
    async def worker_run(
        body: WorkerRunRequest,
        authorization: Optional[str] = Header(default=None),
        settings: Settings = Depends(get_settings_dep),
        pipeline: WorkerPipeline = Depends(get_worker_pipeline),
    ) -> JSONResponse:
        """Run one job through the pipeline and return its snapshot."""
        if not tokens_match(settings.worker_shared_secret, parse_bearer_token(authorization)):
            raise AccessError()
        if not body.job_id:
            raise MissingJobIdError()

        logger.info(f"Worker received job {body.job_id}")
        snapshot = await pipeline.run_job(body.job_id)
        return JSONResponse(content=snapshot.to_payload())

    return app


app = create_worker_app()


if __name__ == "__main__":
    configure_runtime()
    uvicorn.run("studyguide.worker:app", host="0.0.0.0", port=get_settings().worker_port)
