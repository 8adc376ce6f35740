"""Celery tasks that execute render runs."""
from __future__ import annotations

import asyncio
import uuid
from typing import List

from celery import shared_task

from cleanup.service import CleanupClient
from render.controller import RenderRunController
from render.generation import GeminiGenerationClient
from render.placements import RenderPolicy
from shared.config import Settings, get_settings
from shared.db import get_sync_session
from shared.errors import NotFound
from shared.models import RenderRun, RunStatus
from shared.storage import ObjectStore
from telemetry.recorder import PrometheusTelemetrySink, TelemetrySink


def build_sinks(settings: Settings) -> List[TelemetrySink]:
    return [
        PrometheusTelemetrySink(
            settings.telemetry_namespace, pushgateway_url=settings.telemetry_pushgateway_url
        )
    ]


async def execute_run(run_id: uuid.UUID, settings: Settings) -> RunStatus:
    cleanup = CleanupClient(settings)
    generation = GeminiGenerationClient(settings)
    try:
        with get_sync_session() as session:
            run = session.get(RenderRun, run_id)
            if not run:
                raise NotFound(f"Run {run_id} not found")
            if run.status != RunStatus.CREATED:
                return run.status
            controller = RenderRunController(
                session,
                storage=ObjectStore(settings),
                cleanup=cleanup,
                generation=generation,
                telemetry_sinks=build_sinks(settings),
                policy=RenderPolicy.from_settings(settings),
            )
            await controller.execute(run)
            return run.status
    finally:
        await cleanup.aclose()
        await generation.aclose()


@shared_task(name="render.execute_run")
def execute_run_task(run_id: str) -> str:
    settings = get_settings()
    status = asyncio.run(execute_run(uuid.UUID(run_id), settings))
    return status.value
