"""Celery worker configuration and periodic tasks."""

import asyncio
import logging
from dataclasses import asdict

from celery import Celery

from langloop.config import get_settings

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Create Celery app
celery_app = Celery(
    "langloop_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=600,  # 10 minutes max per run
    task_soft_time_limit=540,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_queue="default",
    beat_schedule={
        "drain-work-log": {
            "task": "langloop.worker.drain_work_log",
            "schedule": settings.drain_interval_seconds,
        },
        "reclaim-work-log": {
            "task": "langloop.worker.reclaim_work_log",
            "schedule": settings.reclaim_interval_seconds,
        },
        "sweep-review-ready": {
            "task": "langloop.worker.sweep_review_ready",
            "schedule": settings.review_sweep_interval_seconds,
        },
    },
)


async def _with_services(work):
    """Build the service graph for one run and release its connections afterwards."""
    from langloop.db.session import engine
    from langloop.services.container import build_services

    services = build_services(settings)
    try:
        await services.work_log.initialize()
        return await work(services)
    finally:
        await services.close()
        await engine.dispose()


@celery_app.task(name="langloop.worker.drain_work_log")
def drain_work_log() -> dict:
    """Process new work log entries as this worker's consumer."""

    async def run(services):
        return await services.processor.drain()

    report = asyncio.run(_with_services(run))
    return asdict(report)


@celery_app.task(name="langloop.worker.reclaim_work_log")
def reclaim_work_log() -> dict:
    """Take over and process entries abandoned by crashed consumers."""

    async def run(services):
        return await services.processor.reclaim()

    report = asyncio.run(_with_services(run))
    if report.processed or report.failed:
        logger.info(f"Reclaim run finished: {report}")
    return asdict(report)


@celery_app.task(name="langloop.worker.sweep_review_ready")
def sweep_review_ready() -> list[str]:
    """Batch any review-ready languages that were not batched when they became ready."""

    async def run(services):
        return await services.review_batcher.batch_ready()

    batch_ids = asyncio.run(_with_services(run))
    if batch_ids:
        logger.info(f"Review sweep created {len(batch_ids)} batches")
    return batch_ids
