"""Study guide API service."""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from studyguide.api.routes import register_exception_handlers, router
from studyguide.bootstrap import configure_runtime
from studyguide.config import get_settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_runtime()
    yield


def create_app() -> FastAPI:
    app = FastAPI(title="Lecture Study Guide API", lifespan=lifespan)

    app.include_router(router)
    register_exception_handlers(app)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    configure_runtime()
    uvicorn.run("studyguide.main:app", host="0.0.0.0", port=get_settings().api_port)
