"""
Celery Application — background work for the Fence Configurator.

Runs the labor-cost recompute off the request path.  The application
enqueues it when a labor rate or labor rule changes; there is no beat
schedule.
"""
import asyncio

from celery import Celery
from celery.signals import setup_logging as celery_setup_logging
from celery.signals import worker_init

from app import config
from app.services.logging_config import setup_logging

celery_app = Celery(
    "fence_configurator",
    broker=config.CELERY_BROKER_URL,
    backend=config.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_soft_time_limit=300,   # 5 minutes soft limit
    task_time_limit=600,        # 10 minutes hard limit
    result_expires=3600,        # Results expire after 1 hour
)


@celery_setup_logging.connect
def _configure_worker_logging(**kwargs):
    """Use the application's JSON logging instead of Celery's default handlers."""
    setup_logging(level=config.LOG_LEVEL, json_output=config.LOG_JSON)


@worker_init.connect
def _create_tables(**kwargs):
    """Create any missing rule and cache tables before the worker takes tasks."""
    from app.db import engine, init_db

    async def _init():
        await init_db()
        # pooled connections belong to this loop; tasks run on their own loops
        await engine.dispose()

    asyncio.run(_init())
