from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from prompts.library import seed_system_prompts
from shared.config import settings_dict
from shared.errors import ConfigError, NotFound, RenderPipelineError
from shared.log_config import setup_logging
from shared.pipeline import WATERFALL_STAGES

from .dependencies import get_db
from .routes import logs, prompts, runs
from .schemas.prompts import ErrorBody, ErrorEnvelope


description = """
Room render orchestration API.

A render run composes one product into one or more room photos:
1. the room photo is **cleaned** of the masked object,
2. the shop's placement **prompt** is resolved and snapshotted,
3. the composite is **generated** and stored,
4. per-stage timings, usage and outcomes are recorded on the run.
"""

setup_logging()


async def seed_default_prompts(app: FastAPI) -> None:
    """Store the SYSTEM prompt templates that shops fall back to."""

    provider = app.dependency_overrides.get(get_db, get_db)
    sessions = provider()
    try:
        session = await sessions.__anext__()
        await session.run_sync(seed_system_prompts)
    finally:
        await sessions.aclose()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    await seed_default_prompts(app)
    yield


app = FastAPI(
    lifespan=lifespan,
    title="Room Render API",
    description=description,
    version="0.1.0",
    openapi_tags=[
        {"name": "runs", "description": "Render run orchestration"},
        {"name": "logs", "description": "Streaming run logs"},
        {"name": "prompts", "description": "Resolved prompt detail"},
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(runs.router)
app.include_router(logs.router)
app.include_router(prompts.router)

ERROR_STATUS = {NotFound: 404, ConfigError: 503}


@app.exception_handler(RenderPipelineError)
async def pipeline_error_handler(request: Request, exc: RenderPipelineError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in ERROR_STATUS.items() if isinstance(exc, error_type)), 502
    )
    body = ErrorEnvelope(error=ErrorBody(code=exc.code, message=str(exc)))
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.get("/health", tags=["meta"])
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/settings", tags=["meta"])
def settings() -> dict:
    return settings_dict()


@app.get("/pipeline", tags=["meta"])
def pipeline_flow() -> dict[str, list[str]]:
    return {"stages": WATERFALL_STAGES}
