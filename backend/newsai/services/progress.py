"""Cross-job progress tracking and user notifications.

One ``ProgressAggregator`` exists per user session. It polls every job in the
user's pending-job ledger on a fixed cadence, keeps the last known status of
each, and publishes a single terminal notification per job to subscribers
(the SSE stream in the HTTP layer). Percentages and step indices are display
heuristics only and never drive state.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from newsai.core.constants import (
    DEFAULT_FAILURE_REASON,
    PIPELINE_STEPS,
    PROGRESS_RULES,
    JobState,
    ProgressRule,
)
from newsai.core.errors import PollError
from newsai.schemas.config import PollingConfig, ProgressConfig
from newsai.schemas.job import JobSnapshot, Notification, NotificationKind, PendingJob, TrackedJobOut
from newsai.services.job_store import PendingJobLedger
from newsai.services.poller import StatusSource

logger = logging.getLogger(__name__)

PERCENT_PATTERN = re.compile(r"(\d{1,3})\s*%")
DEFAULT_LADDER = ProgressConfig()

Listener = Callable[[Notification], Any]
TerminalHook = Callable[[str, PendingJob, JobSnapshot], Awaitable[None]]
SleepFn = Callable[[float], Awaitable[None]]


def match_progress_rule(text: Optional[str]) -> Optional[ProgressRule]:
    if not text:
        return None
    lowered = text.lower()
    for rule in PROGRESS_RULES:
        if rule.matches(lowered):
            return rule
    return None


def progress_percent(snapshot: Optional[JobSnapshot], ladder: Optional[ProgressConfig] = None) -> int:
    ladder = ladder or DEFAULT_LADDER
    if snapshot is None:
        return ladder.status_percent.get(JobState.PENDING.value, 0)
    if snapshot.status != JobState.PROCESSING:
        return ladder.status_percent.get(snapshot.status.value, 0)

    explicit = PERCENT_PATTERN.search(snapshot.progress or "")
    if explicit:
        return max(ladder.processing_floor, min(ladder.processing_ceiling, int(explicit.group(1))))

    rule = match_progress_rule(snapshot.progress)
    if rule is None:
        return ladder.processing_floor
    return ladder.step_percent.get(rule.step, rule.percent)


def step_index(snapshot: Optional[JobSnapshot]) -> Optional[int]:
    if snapshot is None:
        return None
    if snapshot.status == JobState.COMPLETED:
        return len(PIPELINE_STEPS) - 1
    rule = match_progress_rule(snapshot.progress)
    return rule.step if rule else None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def make_notification(kind: NotificationKind, job_id: str, title: str, message: str) -> Notification:
    return Notification(kind=kind, job_id=job_id, title=title, message=message, created_at=_now())


def completion_notification(job_id: str, job_title: str) -> Notification:
    return make_notification(
        "completed",
        job_id,
        "Video Generated Successfully!",
        f"{job_title} is ready to download.",
    )


def failure_notification(job_id: str, reason: str) -> Notification:
    return make_notification(
        "failed",
        job_id,
        "Video Generation Failed",
        f"{reason}. You can modify your script and try again.",
    )


async def _deliver(listener: Listener, notification: Notification) -> None:
    result = listener(notification)
    if inspect.isawaitable(result):
        await result


class ProgressAggregator:
    def __init__(
        self,
        user_id: str,
        ledger: PendingJobLedger,
        client: StatusSource,
        polling: PollingConfig,
        *,
        on_terminal: Optional[TerminalHook] = None,
        sleep: Optional[SleepFn] = None,
        autopoll: bool = True,
        ladder: Optional[ProgressConfig] = None,
    ) -> None:
        self.user_id = user_id
        self._ladder = ladder or DEFAULT_LADDER
        self._autopoll = autopoll
        self._ledger = ledger
        self._client = client
        self._polling = polling
        self._on_terminal = on_terminal
        self._sleep = sleep or asyncio.sleep
        self._jobs: dict[str, PendingJob] = {}
        self._notified: set[str] = set()
        self._listeners: list[Listener] = []
        self._task: Optional[asyncio.Task[None]] = None
        self._started = False

    @property
    def tracked_ids(self) -> list[str]:
        return list(self._jobs)

    def start(self) -> None:
        """Load the persisted ledger and begin polling if an event loop is running.

        Entries past the display age stay in the ledger until the orchestrator
        or the stale sweep settles their credits.
        """
        if self._started:
            return
        self._started = True
        for entry in self._ledger.list_entries():
            self._jobs.setdefault(entry.job_id, entry)
        self._ensure_loop()

    async def stop(self) -> None:
        self._started = False
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def _ensure_loop(self) -> None:
        if not self._autopoll or not self._started or (self._task is not None and not self._task.done()):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("no running event loop, aggregator for %s polls on demand", self.user_id)
            return
        self._task = loop.create_task(self._run())

    async def _run(self) -> None:
        interval = self._polling.aggregator_interval_ms / 1000
        while self._started:
            if self._jobs:
                try:
                    await self.poll_once()
                except Exception:
                    logger.exception("progress round failed for user %s", self.user_id)
            await self._sleep(interval)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def publish(self, notification: Notification) -> None:
        for listener in list(self._listeners):
            try:
                await _deliver(listener, notification)
            except Exception:
                logger.exception("notification listener failed for job %s", notification.job_id)

    def track(self, entry: PendingJob) -> None:
        self._jobs[entry.job_id] = entry
        self._notified.discard(entry.job_id)
        self._ensure_loop()

    def untrack(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    def get(self, job_id: str) -> Optional[PendingJob]:
        return self._jobs.get(job_id)

    def update(self, snapshot: JobSnapshot) -> None:
        entry = self._jobs.get(snapshot.job_id)
        if entry is not None:
            self._jobs[snapshot.job_id] = entry.model_copy(update={"last_status": snapshot})

    async def finish(self, job_id: str, notification: Optional[Notification] = None) -> bool:
        """Retire a terminal job; return False when it was already announced."""
        self.untrack(job_id)
        self._ledger.remove(job_id)
        if job_id in self._notified:
            return False
        self._notified.add(job_id)
        if notification is not None:
            await self.publish(notification)
        return True

    async def _poll_job(self, entry: PendingJob) -> PendingJob:
        try:
            snapshot = await self._client.fetch_status(entry.job_id)
        except PollError as exc:
            logger.info("progress poll for %s failed, keeping last status: %s", entry.job_id, exc)
            return entry
        return entry.model_copy(update={"last_status": snapshot})

    async def poll_once(self) -> list[PendingJob]:
        entries = list(self._jobs.values())
        if not entries:
            return []
        updated = await asyncio.gather(*(self._poll_job(entry) for entry in entries))

        for entry in updated:
            if entry.job_id not in self._jobs:
                continue
            snapshot = entry.last_status
            if snapshot is None:
                continue
            if not snapshot.is_terminal:
                self._jobs[entry.job_id] = entry
                self._ledger.update_status(entry.job_id, snapshot)
                continue
            if self._on_terminal is not None:
                await self._on_terminal(self.user_id, entry, snapshot)
            elif snapshot.status == JobState.COMPLETED:
                await self.finish(entry.job_id, completion_notification(entry.job_id, entry.title))
            else:
                await self.finish(entry.job_id, failure_notification(entry.job_id, snapshot.error or DEFAULT_FAILURE_REASON))
        return [entry for entry in updated if entry.job_id in self._jobs]

    def snapshot(self) -> list[TrackedJobOut]:
        jobs: list[TrackedJobOut] = []
        for entry in sorted(self._jobs.values(), key=lambda item: item.started_at):
            status = entry.last_status
            jobs.append(
                TrackedJobOut(
                    job_id=entry.job_id,
                    title=entry.title,
                    started_at=entry.started_at,
                    duration_seconds=entry.duration_seconds,
                    status=status.status if status else JobState.PENDING,
                    progress=status.progress if status else None,
                    progress_percent=progress_percent(status, self._ladder),
                    step_index=step_index(status),
                )
            )
        return jobs


class ProgressRegistry:
    """Session-scoped aggregators, created lazily and closed with the app."""

    def __init__(self, factory: Callable[[str], ProgressAggregator]) -> None:
        self._factory = factory
        self._aggregators: dict[str, ProgressAggregator] = {}

    def get(self, user_id: str) -> ProgressAggregator:
        aggregator = self._aggregators.get(user_id)
        if aggregator is None:
            aggregator = self._factory(user_id)
            self._aggregators[user_id] = aggregator
            aggregator.start()
        return aggregator

    def peek(self, user_id: str) -> Optional[ProgressAggregator]:
        return self._aggregators.get(user_id)

    async def close(self, user_id: str) -> None:
        aggregator = self._aggregators.pop(user_id, None)
        if aggregator is not None:
            await aggregator.stop()

    async def close_all(self) -> None:
        for user_id in list(self._aggregators):
            await self.close(user_id)
