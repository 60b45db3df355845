"""Huey queue definitions and enqueue helpers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from huey import SqliteHuey, crontab

from newsai.core.settings import PATHS
from newsai.db.base import Base
from newsai.db.session import SessionLocal, engine
from newsai.schemas.config import TrackingConfig
from newsai.services.config_store import load_config
from newsai.services.container import build_services
from newsai.services.reconciliation import sweep_stale_jobs

logger = logging.getLogger(__name__)

huey = SqliteHuey("newsai", filename=str(PATHS.queue_path))


def _worker_services():
    Base.metadata.create_all(bind=engine)
    return build_services(load_config(), SessionLocal, background_progress=False)


async def _reconcile(user_id: str, job_id: str, duration_seconds: Optional[int]) -> dict[str, Any]:
    services = _worker_services()
    try:
        result = await services.orchestrator.reconcile_stale(user_id, job_id, duration_seconds)
    finally:
        await services.orchestrator.shutdown()
    return result.model_dump(mode="json", by_alias=True)


async def _sweep() -> list[dict[str, Any]]:
    services = _worker_services()
    try:
        results = await sweep_stale_jobs(services.orchestrator, services.config.tracking.stale_after_s)
    finally:
        await services.orchestrator.shutdown()
    return [result.model_dump(mode="json", by_alias=True) for result in results]


@huey.task(retries=0)
def reconcile_job_task(user_id: str, job_id: str, duration_seconds: Optional[int] = None) -> dict[str, Any]:
    return asyncio.run(_reconcile(user_id, job_id, duration_seconds))


def sweep_schedule(tracking: TrackingConfig):
    return crontab(minute=f"*/{tracking.sweep_interval_min}")


@huey.periodic_task(sweep_schedule(load_config().tracking))
def sweep_stale_jobs_task() -> list[dict[str, Any]]:
    results = asyncio.run(_sweep())
    if results:
        logger.info("stale job sweep reconciled %s jobs", len(results))
    return results


def enqueue_reconcile(user_id: str, job_id: str, duration_seconds: Optional[int] = None):
    return reconcile_job_task(user_id, job_id, duration_seconds)
