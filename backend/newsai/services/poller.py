"""Per-job status polling with timeout, error classification and backoff."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Protocol

from newsai.core.constants import DEFAULT_FAILURE_REASON, POLLER_TERMINAL_STATES, JobState, PollerState
from newsai.core.errors import GenerationError, JobTimeout, PermanentPollError, TransientPollError
from newsai.schemas.config import PollingConfig
from newsai.schemas.job import JobSnapshot

logger = logging.getLogger(__name__)

Callback = Callable[..., Any]
SleepFn = Callable[[float], Awaitable[None]]


class StatusSource(Protocol):
    async def fetch_status(self, job_id: str, timeout_s: Optional[float] = None) -> JobSnapshot: ...


def compute_backoff_ms(retry: int, polling: PollingConfig, rate_limited: bool = False) -> int:
    multiplier = polling.rate_limit_multiplier if rate_limited else polling.backoff_multiplier
    delay = polling.backoff_base_ms * (multiplier ** max(0, retry))
    return int(min(delay, polling.backoff_cap_ms))


async def _invoke(callback: Optional[Callback], *args: Any) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class StatusPoller:
    """Drive one job from submission to a terminal state.

    Callbacks may be plain functions or coroutines:
    ``on_update(snapshot)``, ``on_complete(snapshot)``,
    ``on_failure(job_id, reason)`` and ``on_warning(job_id, message)``.
    """

    def __init__(
        self,
        job_id: str,
        client: StatusSource,
        polling: PollingConfig,
        *,
        started_at: Optional[float] = None,
        on_update: Optional[Callback] = None,
        on_complete: Optional[Callback] = None,
        on_failure: Optional[Callback] = None,
        on_warning: Optional[Callback] = None,
        clock: Callable[[], float] = time.time,
        sleep: Optional[SleepFn] = None,
    ) -> None:
        self.job_id = job_id
        self._client = client
        self._polling = polling
        self.started_at = started_at
        self._on_update = on_update
        self._on_complete = on_complete
        self._on_failure = on_failure
        self._on_warning = on_warning
        self._clock = clock
        self._sleep = sleep
        self._cancelled = asyncio.Event()

        self.state = PollerState.IDLE
        self.consecutive_errors = 0
        self.last_snapshot: Optional[JobSnapshot] = None
        self.failure_reason: Optional[str] = None
        self.error: Optional[GenerationError] = None
        self._warned = False

    @property
    def is_finished(self) -> bool:
        return self.state in POLLER_TERMINAL_STATES

    def mark_submitting(self) -> None:
        if self.state == PollerState.IDLE:
            self.state = PollerState.SUBMITTING
        if self.started_at is None:
            self.started_at = self._clock()

    def is_timed_out(self) -> bool:
        if self.started_at is None:
            return False
        return self._clock() - self.started_at > self._polling.job_timeout_s

    def cancel(self) -> None:
        if self.is_finished:
            return
        self.state = PollerState.CANCELLED
        self._cancelled.set()
        logger.info("polling cancelled for job %s", self.job_id)

    async def _wait(self, delay_ms: int) -> None:
        if self._sleep is not None:
            await self._sleep(delay_ms / 1000)
            return
        try:
            await asyncio.wait_for(self._cancelled.wait(), timeout=delay_ms / 1000)
        except asyncio.TimeoutError:
            pass

    async def _fail(self, reason: str, error: Optional[GenerationError] = None) -> PollerState:
        self.state = PollerState.FAILED
        self.failure_reason = reason
        self.error = error
        logger.warning("job %s failed: %s", self.job_id, reason)
        await _invoke(self._on_failure, self.job_id, reason)
        return self.state

    async def _handle_transient(self, exc: TransientPollError) -> Optional[PollerState]:
        self.consecutive_errors += 1
        logger.info("temporary poll error %s for job %s: %s", self.consecutive_errors, self.job_id, exc)

        if self.consecutive_errors >= self._polling.max_consecutive_errors:
            return await self._fail(f"Connection failed after multiple attempts: {exc}", exc)

        if self.consecutive_errors >= self._polling.warning_threshold and not self._warned:
            self._warned = True
            await _invoke(
                self._on_warning,
                self.job_id,
                f"Connection issues detected ({self.consecutive_errors} consecutive errors). Retrying...",
            )

        await self._wait(compute_backoff_ms(self.consecutive_errors - 1, self._polling, exc.rate_limited))
        return None

    async def run(self) -> PollerState:
        self.mark_submitting()
        if self.state == PollerState.CANCELLED:
            return self.state
        self.state = PollerState.POLLING
        timeout = JobTimeout(self._polling.job_timeout_s // 60)

        while True:
            if self._cancelled.is_set():
                return self.state
            if self.is_timed_out():
                return await self._fail(str(timeout), timeout)

            previous_errored = self.consecutive_errors > 0
            try:
                snapshot = await self._client.fetch_status(self.job_id)
            except PermanentPollError as exc:
                if self._cancelled.is_set():
                    return self.state
                return await self._fail(f"Request failed: {exc}", exc)
            except TransientPollError as exc:
                if self._cancelled.is_set():
                    return self.state
                outcome = await self._handle_transient(exc)
                if outcome is not None:
                    return outcome
                continue

            if self._cancelled.is_set():
                logger.debug("discarding late status for cancelled job %s", self.job_id)
                return self.state

            self.consecutive_errors = 0
            self._warned = False
            self.last_snapshot = snapshot
            await _invoke(self._on_update, snapshot)

            if snapshot.status == JobState.COMPLETED:
                self.state = PollerState.COMPLETED
                logger.info("job %s completed", self.job_id)
                await _invoke(self._on_complete, snapshot)
                return self.state
            if snapshot.status == JobState.FAILED:
                return await self._fail(snapshot.error or DEFAULT_FAILURE_REASON)
            if self.is_timed_out():
                return await self._fail(str(timeout), timeout)

            interval = self._polling.error_interval_ms if previous_errored else self._polling.interval_ms
            await self._wait(interval)
