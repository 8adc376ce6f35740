"""Celery application configuration."""
from __future__ import annotations

from celery import Celery, signals
from kombu import Queue

from prompts.library import seed_system_prompts
from shared.config import get_settings
from shared.db import get_sync_session
from shared.log_config import setup_logging

RENDER_QUEUE = "roomrender"

settings = get_settings()

celery_app = Celery(
    "roomrender",
    broker=settings.broker_url,
    backend=settings.result_backend,
    include=["workers.tasks"],
)

celery_app.conf.task_default_queue = RENDER_QUEUE
celery_app.conf.task_queues = (Queue(RENDER_QUEUE, routing_key=RENDER_QUEUE),)
celery_app.conf.task_routes = {"render.*": {"queue": RENDER_QUEUE, "routing_key": RENDER_QUEUE}}
# Runs are acknowledged on receipt and never redelivered once started.
celery_app.conf.task_acks_late = False
celery_app.conf.worker_prefetch_multiplier = 1
celery_app.conf.update(task_serializer="json", accept_content=["json"], result_serializer="json")


@signals.setup_logging.connect
def configure_logging(**kwargs) -> None:
    """Keep Celery from replacing the structlog configuration."""

    setup_logging()


@signals.worker_ready.connect
def seed_prompts(**kwargs) -> None:
    """Make sure the SYSTEM templates exist before the first run is picked up."""

    with get_sync_session() as session:
        seed_system_prompts(session)
