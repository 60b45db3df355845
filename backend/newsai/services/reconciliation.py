"""Sweep of pending jobs whose pollers have gone quiet."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from newsai.schemas.job import ReconcileResult
from newsai.services.job_store import pending_user_ids
from newsai.services.orchestrator import GenerationOrchestrator

logger = logging.getLogger(__name__)


async def sweep_stale_jobs(
    orchestrator: GenerationOrchestrator,
    stale_after_s: int,
    now: Optional[datetime] = None,
) -> list[ReconcileResult]:
    """Reconcile every pending entry older than ``stale_after_s`` without a live poller.

    Expired entries are included so their credits are settled before the
    ledger forgets them.

    ``orchestrator.is_active`` only sees pollers of the same process. When the
    sweep runs in the huey worker, a job still polled by the web process is
    protected by ``stale_after_s`` exceeding the poller's job timeout, which
    ``AppConfig`` enforces.
    """
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=stale_after_s)
    results: list[ReconcileResult] = []
    for user_id in pending_user_ids(orchestrator.kv_store):
        ledger = orchestrator.pending_ledger(user_id)
        for entry in ledger.list_entries(now=now, include_expired=True):
            if entry.started_at > cutoff or orchestrator.is_active(entry.job_id):
                continue
            result = await orchestrator.reconcile_stale(user_id, entry.job_id, entry.duration_seconds)
            logger.info(
                "stale sweep for job %s (user %s): success=%s %s",
                entry.job_id,
                user_id,
                result.success,
                result.error or result.reason or "",
            )
            if not result.success and result.error == "Refund already processed for this job":
                ledger.remove(entry.job_id)
            results.append(result)
    return results
