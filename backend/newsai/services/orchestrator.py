"""Generation lifecycle: submit, track, and reconcile credits on failure.

The orchestrator owns one ``StatusPoller`` per in-flight job and the per-user
``ProgressRegistry``. Every path that ends a job unsuccessfully (a failed
poll, a user cancellation, a stale-job sweep, or an aggregator that noticed the
failure first) goes through ``_refund_and_retire``, and the credit ledger's
unique refund record makes sure credits come back exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Awaitable, Callable, Optional

from newsai.core.constants import (
    ACTIVE_STATES,
    CANCEL_REASON,
    DEFAULT_FAILURE_REASON,
    HOSTS,
    STALE_REFUND_REASON,
    JobState,
)
from newsai.core.errors import InsufficientCredits, JobNotFound, PollError, RefundFailed
from newsai.schemas.config import AppConfig
from newsai.schemas.job import (
    GenerateVideoRequest,
    JobSnapshot,
    PendingJob,
    ReconcileResult,
    RefundOutcome,
    SubmitResult,
)
from newsai.services.credit_ledger import CreditLedger
from newsai.services.job_store import JobStore, PendingJobLedger, pending_user_ids
from newsai.services.kv_store import KeyValueStore
from newsai.services.poller import StatusPoller
from newsai.services.progress import (
    ProgressAggregator,
    ProgressRegistry,
    completion_notification,
    failure_notification,
    make_notification,
)
from newsai.services.rendering_client import RenderingClient
from newsai.services.validation import validate_generation_request

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]

REFUND_FAILED_MESSAGE = "Failed to refund credits. Please contact support."


@dataclass
class ActiveJob:
    user_id: str
    job_id: str
    title: str
    duration_seconds: int
    poller: StatusPoller
    task: Optional[asyncio.Task] = None


def default_title(request: GenerateVideoRequest) -> str:
    host = HOSTS.get(request.selected_host, request.selected_host)
    return f"News video with {host}"


class GenerationOrchestrator:
    def __init__(
        self,
        ledger: CreditLedger,
        kv_store: KeyValueStore,
        client: RenderingClient,
        config: AppConfig,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Optional[SleepFn] = None,
        background_progress: bool = True,
    ) -> None:
        self.ledger = ledger
        self.kv_store = kv_store
        self.client = client
        self.config = config
        self._clock = clock
        self._sleep = sleep
        self._background_progress = background_progress
        self._active: dict[str, ActiveJob] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self.progress = ProgressRegistry(self._build_aggregator)

    def job_store(self, user_id: str) -> JobStore:
        return JobStore(self.kv_store, user_id)

    def pending_ledger(self, user_id: str) -> PendingJobLedger:
        return PendingJobLedger(self.kv_store, user_id, max_age_s=self.config.tracking.pending_max_age_s)

    def _build_aggregator(self, user_id: str) -> ProgressAggregator:
        return ProgressAggregator(
            user_id,
            self.pending_ledger(user_id),
            self.client,
            self.config.polling,
            on_terminal=self.acknowledge_terminal,
            autopoll=self._background_progress,
            ladder=self.config.progress,
        )

    def is_active(self, job_id: str) -> bool:
        return job_id in self._active

    def active_poller(self, job_id: str) -> Optional[StatusPoller]:
        active = self._active.get(job_id)
        return active.poller if active else None

    async def submit(self, user_id: str, request: GenerateVideoRequest) -> SubmitResult:
        validate_generation_request(request, self.config.credits)

        cost = self.ledger.cost_for(request.duration)
        check = self.ledger.check_credits(user_id, request.duration)
        if not check.has_enough:
            raise InsufficientCredits(required=cost, balance=check.balance)

        job_id = await self.client.submit_generation(request.to_rendering_payload())
        logger.info("rendering service accepted job %s for user %s", job_id, user_id)

        try:
            remaining = self.ledger.deduct(user_id, cost)
        except InsufficientCredits:
            logger.warning("balance changed during submission of job %s; not tracking it", job_id)
            raise

        started_ts = self._clock()
        started_at = datetime.fromtimestamp(started_ts, timezone.utc)
        stamp = started_at.isoformat()
        snapshot = JobSnapshot(job_id=job_id, status=JobState.PENDING, created_at=stamp, updated_at=stamp)
        title = (request.title or "").strip() or default_title(request)

        self.job_store(user_id).save_job(snapshot)
        entry = self.pending_ledger(user_id).add(
            job_id,
            title,
            request.duration,
            started_at=started_at,
            last_status=snapshot,
        )
        self.progress.get(user_id).track(entry)
        self._start_poller(user_id, entry)

        return SubmitResult(job_id=job_id, credits_deducted=cost, remaining_credits=remaining)

    def _start_poller(self, user_id: str, entry: PendingJob) -> ActiveJob:
        poller = StatusPoller(
            entry.job_id,
            self.client,
            self.config.polling,
            started_at=entry.started_at.timestamp(),
            on_update=partial(self._on_update, user_id),
            on_complete=partial(self.handle_completion, user_id),
            on_failure=partial(self.handle_failure, user_id),
            on_warning=partial(self._on_warning, user_id),
            clock=self._clock,
            sleep=self._sleep,
        )
        poller.mark_submitting()
        active = ActiveJob(
            user_id=user_id,
            job_id=entry.job_id,
            title=entry.title,
            duration_seconds=entry.duration_seconds,
            poller=poller,
        )
        self._active[entry.job_id] = active
        active.task = asyncio.get_running_loop().create_task(self._run_poller(active))
        self._tasks[entry.job_id] = active.task
        active.task.add_done_callback(partial(self._forget_task, entry.job_id))
        return active

    async def _run_poller(self, active: ActiveJob) -> None:
        try:
            await active.poller.run()
        except Exception:
            logger.exception("poller for job %s crashed", active.job_id)
            self._active.pop(active.job_id, None)

    def _forget_task(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]

    async def join(self, job_id: str) -> None:
        """Wait for the poller of ``job_id`` to finish, if one is running."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)

    async def _on_update(self, user_id: str, snapshot: JobSnapshot) -> None:
        if snapshot.job_id not in self._active:
            return
        self.job_store(user_id).save_job(snapshot)
        self.pending_ledger(user_id).update_status(snapshot.job_id, snapshot)
        self.progress.get(user_id).update(snapshot)

    async def _on_warning(self, user_id: str, job_id: str, message: str) -> None:
        active = self._active.get(job_id)
        title = active.title if active else job_id
        await self.progress.get(user_id).publish(make_notification("warning", job_id, title, message))

    async def handle_completion(self, user_id: str, snapshot: JobSnapshot) -> None:
        active = self._active.pop(snapshot.job_id, None)
        entry = self.pending_ledger(user_id).get(snapshot.job_id)
        title = active.title if active else (entry.title if entry else snapshot.job_id)

        self.job_store(user_id).save_job(snapshot)
        self.pending_ledger(user_id).remove(snapshot.job_id)
        await self.progress.get(user_id).finish(snapshot.job_id, completion_notification(snapshot.job_id, title))
        logger.info("job %s completed for user %s", snapshot.job_id, user_id)

    async def handle_failure(
        self,
        user_id: str,
        job_id: str,
        reason: str,
        duration_seconds: Optional[int] = None,
    ) -> RefundOutcome:
        active = self._active.pop(job_id, None)
        duration = duration_seconds
        if active is not None:
            duration = active.duration_seconds
        if duration is None:
            entry = self.pending_ledger(user_id).get(job_id)
            duration = entry.duration_seconds if entry else None

        await self.progress.get(user_id).finish(job_id, failure_notification(job_id, reason))
        return await self._refund_and_retire(user_id, job_id, duration, reason)

    async def _refund_and_retire(
        self,
        user_id: str,
        job_id: str,
        duration_seconds: Optional[int],
        reason: str,
    ) -> RefundOutcome:
        aggregator = self.progress.get(user_id)
        try:
            if duration_seconds is None:
                logger.error("cannot refund job %s: duration unknown", job_id)
                return RefundOutcome(job_id=job_id, refunded=False, error="Job duration unknown")

            amount = self.ledger.cost_for(duration_seconds)
            try:
                result = self.ledger.refund(job_id, user_id, amount, reason)
            except RefundFailed as exc:
                logger.error("refund for job %s failed: %s", job_id, exc)
                await aggregator.publish(
                    make_notification("refund_failed", job_id, "Refund Failed", REFUND_FAILED_MESSAGE)
                )
                return RefundOutcome(job_id=job_id, refunded=False, error=str(exc))

            if result.applied:
                await aggregator.publish(
                    make_notification(
                        "refund",
                        job_id,
                        "Credits Refunded",
                        f"{result.amount} credits have been refunded to your account.",
                    )
                )
                return RefundOutcome(
                    job_id=job_id,
                    refunded=True,
                    amount=result.amount,
                    new_balance=result.new_balance,
                )
            return RefundOutcome(
                job_id=job_id,
                refunded=False,
                amount=result.amount,
                new_balance=self.ledger.balance(user_id),
                already_refunded=True,
            )
        finally:
            self._retire(user_id, job_id)

    def _retire(self, user_id: str, job_id: str) -> None:
        self.job_store(user_id).remove_job(job_id)
        self.pending_ledger(user_id).remove(job_id)
        self.progress.get(user_id).untrack(job_id)

    def acknowledge(self, user_id: str, job_id: str) -> bool:
        """Drop a finished job the user has seen. Active jobs are left alone."""
        if job_id in self._active:
            return False
        return self.job_store(user_id).remove_job(job_id)

    async def cancel(self, user_id: str, job_id: str) -> RefundOutcome:
        active = self._active.get(job_id)
        if active is not None and active.user_id != user_id:
            raise JobNotFound(f"Job not found: {job_id}")

        if active is not None:
            self._active.pop(job_id, None)
            active.poller.cancel()
            duration = active.duration_seconds
            title = active.title
        else:
            entry = self.pending_ledger(user_id).get(job_id)
            if entry is None:
                existing = self.ledger.get_refund(job_id, user_id=user_id)
                if existing is not None:
                    return RefundOutcome(
                        job_id=job_id,
                        refunded=False,
                        amount=existing.refund_amount,
                        new_balance=self.ledger.balance(user_id),
                        already_refunded=True,
                    )
                raise JobNotFound(f"Job not found: {job_id}")
            duration = entry.duration_seconds
            title = entry.title

        logger.info("user %s cancelled job %s", user_id, job_id)
        await self.progress.get(user_id).finish(
            job_id,
            make_notification("cancelled", job_id, title, "Video generation was cancelled."),
        )
        return await self._refund_and_retire(user_id, job_id, duration, CANCEL_REASON)

    def _owned_duration(self, user_id: str, job_id: str) -> Optional[int]:
        active = self._active.get(job_id)
        if active is not None:
            return active.duration_seconds if active.user_id == user_id else None
        entry = self.pending_ledger(user_id).get(job_id)
        return entry.duration_seconds if entry else None

    async def reconcile_stale(
        self,
        user_id: str,
        job_id: str,
        duration_seconds: Optional[int] = None,
    ) -> ReconcileResult:
        """Refund a job of ``user_id`` that the rendering service lost track of.

        Only jobs in the user's pending ledger (or with a live poller) qualify,
        and the refund is priced from the duration recorded at submission.
        ``duration_seconds`` is what the caller believes it paid for and is
        only compared against that record.
        """
        existing = self.ledger.get_refund(job_id, user_id=user_id)
        if existing is not None:
            return ReconcileResult(
                success=False,
                job_id=job_id,
                refund_amount=existing.refund_amount,
                error="Refund already processed for this job",
            )

        recorded = self._owned_duration(user_id, job_id)
        if recorded is None:
            raise JobNotFound(f"Job not found: {job_id}")
        if duration_seconds is not None and duration_seconds != recorded:
            logger.warning(
                "reconcile of job %s claimed %ss but %ss was paid for; using the recorded duration",
                job_id,
                duration_seconds,
                recorded,
            )
        amount = self.ledger.cost_for(recorded)

        try:
            snapshot = await self.client.fetch_status(job_id, timeout_s=self.config.rendering.reconcile_timeout_s)
        except PollError as exc:
            logger.info("stale job %s unreachable, refunding: %s", job_id, exc)
        else:
            if snapshot.status in ACTIVE_STATES:
                return ReconcileResult(
                    success=False,
                    job_id=job_id,
                    current_status=snapshot.status,
                    error="Job is still in progress",
                )
            if snapshot.status == JobState.COMPLETED:
                if job_id not in self._active:
                    self.pending_ledger(user_id).remove(job_id)
                return ReconcileResult(
                    success=False,
                    job_id=job_id,
                    current_status=snapshot.status,
                    error="Job completed successfully",
                )

        active = self._active.pop(job_id, None)
        if active is not None:
            active.poller.cancel()

        outcome = await self._refund_and_retire(user_id, job_id, recorded, STALE_REFUND_REASON)
        if outcome.already_refunded:
            return ReconcileResult(
                success=False,
                job_id=job_id,
                refund_amount=outcome.amount,
                error="Refund already processed for this job",
            )
        if outcome.error:
            return ReconcileResult(success=False, job_id=job_id, error=outcome.error)
        return ReconcileResult(
            success=True,
            job_id=job_id,
            refund_amount=amount,
            new_balance=outcome.new_balance,
            reason=STALE_REFUND_REASON,
        )

    async def acknowledge_terminal(self, user_id: str, entry: PendingJob, snapshot: JobSnapshot) -> None:
        """Handle a terminal status seen by the progress aggregator.

        Jobs with a running poller are left to it; everything else is settled
        here so a job whose poller never started still gets refunded.
        """
        if entry.job_id in self._active:
            self.progress.get(user_id).update(snapshot)
            return
        if snapshot.status == JobState.COMPLETED:
            await self.handle_completion(user_id, snapshot)
        else:
            await self.handle_failure(
                user_id,
                entry.job_id,
                snapshot.error or DEFAULT_FAILURE_REASON,
                duration_seconds=entry.duration_seconds,
            )

    async def resume_pending(self) -> int:
        """Restart polling for every persisted in-flight job.

        Entries past the display age are resumed as well. Their pollers hit the
        job timeout on the first check and take the normal refund path.
        """
        resumed = 0
        for user_id in pending_user_ids(self.kv_store):
            ledger = self.pending_ledger(user_id)
            for entry in ledger.list_entries(include_expired=True):
                if entry.job_id in self._active:
                    continue
                self.progress.get(user_id).track(entry)
                self._start_poller(user_id, entry)
                resumed += 1
        if resumed:
            logger.info("resumed polling for %s pending jobs", resumed)
        return resumed

    async def shutdown(self) -> None:
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()
        self._active.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.progress.close_all()
