import asyncio
from typing import Optional, Union

from newsai.core.constants import JobState, PollerState
from newsai.core.errors import JobTimeout, PermanentPollError, PollError, TransientPollError
from newsai.schemas.config import PollingConfig
from newsai.schemas.job import JobSnapshot
from newsai.services.poller import StatusPoller, compute_backoff_ms
from newsai.services.rendering_client import classify_status_code

POLLING = PollingConfig()


class ScriptedSource:
    """Returns scripted snapshots or raises scripted errors; the last entry repeats."""

    def __init__(self, *script: Union[JobSnapshot, PollError], before_return=None) -> None:
        self.script = list(script)
        self.calls = 0
        self.before_return = before_return

    async def fetch_status(self, job_id: str, timeout_s: Optional[float] = None) -> JobSnapshot:
        self.calls += 1
        entry = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if self.before_return is not None:
            self.before_return()
        if isinstance(entry, PollError):
            raise entry
        return entry


def snap(status: JobState, **extra) -> JobSnapshot:
    return JobSnapshot(job_id="job_1", status=status, **extra)


class Recorder:
    def __init__(self) -> None:
        self.updates: list[JobSnapshot] = []
        self.completed: list[JobSnapshot] = []
        self.failures: list[tuple[str, str]] = []
        self.warnings: list[str] = []

    def callbacks(self) -> dict:
        return {
            "on_update": self.updates.append,
            "on_complete": self.completed.append,
            "on_failure": lambda job_id, reason: self.failures.append((job_id, reason)),
            "on_warning": lambda job_id, message: self.warnings.append(message),
        }


def make_poller(source, clock, fake_sleep, recorder: Recorder, **kwargs) -> StatusPoller:
    return StatusPoller("job_1", source, POLLING, clock=clock, sleep=fake_sleep, **recorder.callbacks(), **kwargs)


def test_backoff_grows_and_caps() -> None:
    delays = [compute_backoff_ms(retry, POLLING) for retry in range(8)]
    assert delays[:4] == [2000, 3000, 4500, 6750]
    assert delays == sorted(delays)
    assert max(delays) == 20000


def test_rate_limited_backoff_uses_steeper_multiplier() -> None:
    delays = [compute_backoff_ms(retry, POLLING, rate_limited=True) for retry in range(5)]
    assert delays == [2000, 4000, 8000, 16000, 20000]


def test_status_code_classification() -> None:
    assert classify_status_code(200) is None
    assert isinstance(classify_status_code(404, "Not Found"), PermanentPollError)
    assert isinstance(classify_status_code(400), PermanentPollError)

    rate_limited = classify_status_code(429)
    assert isinstance(rate_limited, TransientPollError)
    assert rate_limited.rate_limited is True

    for code in (500, 502, 503):
        error = classify_status_code(code)
        assert isinstance(error, TransientPollError)
        assert error.rate_limited is False


def test_happy_path_completes(clock, fake_sleep) -> None:
    recorder = Recorder()
    source = ScriptedSource(snap(JobState.PENDING), snap(JobState.PROCESSING), snap(JobState.COMPLETED))
    poller = make_poller(source, clock, fake_sleep, recorder)

    outcome = asyncio.run(poller.run())

    assert outcome == PollerState.COMPLETED
    assert [s.status for s in recorder.updates] == [JobState.PENDING, JobState.PROCESSING, JobState.COMPLETED]
    assert len(recorder.completed) == 1
    assert recorder.failures == []
    assert fake_sleep.delays == [2.0, 2.0]


def test_failed_status_reports_server_error(clock, fake_sleep) -> None:
    recorder = Recorder()
    poller = make_poller(ScriptedSource(snap(JobState.FAILED, error="render crashed")), clock, fake_sleep, recorder)

    assert asyncio.run(poller.run()) == PollerState.FAILED
    assert recorder.failures == [("job_1", "render crashed")]


def test_failed_status_without_error_uses_default_reason(clock, fake_sleep) -> None:
    recorder = Recorder()
    poller = make_poller(ScriptedSource(snap(JobState.FAILED)), clock, fake_sleep, recorder)

    asyncio.run(poller.run())
    assert recorder.failures == [("job_1", "Video generation failed")]


def test_permanent_error_fails_immediately(clock, fake_sleep) -> None:
    recorder = Recorder()
    source = ScriptedSource(PermanentPollError("Request error (404): Not Found", status_code=404))
    poller = make_poller(source, clock, fake_sleep, recorder)

    assert asyncio.run(poller.run()) == PollerState.FAILED
    assert source.calls == 1
    assert recorder.failures == [("job_1", "Request failed: Request error (404): Not Found")]
    assert isinstance(poller.error, PermanentPollError)
    assert fake_sleep.delays == []


def test_seven_transient_errors_fail_with_cause(clock, fake_sleep) -> None:
    recorder = Recorder()
    source = ScriptedSource(TransientPollError("Server temporarily unavailable (503)", status_code=503))
    poller = make_poller(source, clock, fake_sleep, recorder)

    assert asyncio.run(poller.run()) == PollerState.FAILED
    assert source.calls == 7
    assert recorder.failures == [
        ("job_1", "Connection failed after multiple attempts: Server temporarily unavailable (503)")
    ]
    assert fake_sleep.delays == [compute_backoff_ms(retry, POLLING) / 1000 for retry in range(6)]
    assert len(recorder.warnings) == 1


def test_recovery_resets_counter_and_slows_next_poll(clock, fake_sleep) -> None:
    recorder = Recorder()
    blip = TransientPollError("Network error: connection reset")
    source = ScriptedSource(blip, blip, snap(JobState.PROCESSING), snap(JobState.PROCESSING), snap(JobState.COMPLETED))
    poller = make_poller(source, clock, fake_sleep, recorder)

    assert asyncio.run(poller.run()) == PollerState.COMPLETED
    assert poller.consecutive_errors == 0
    assert fake_sleep.delays == [2.0, 3.0, 3.0, 2.0]
    assert recorder.warnings == []


def test_rate_limited_errors_back_off_faster(clock, fake_sleep) -> None:
    recorder = Recorder()
    limited = TransientPollError("Rate limit exceeded (429)", status_code=429, rate_limited=True)
    source = ScriptedSource(limited, limited, limited, snap(JobState.COMPLETED))
    poller = make_poller(source, clock, fake_sleep, recorder)

    asyncio.run(poller.run())
    assert fake_sleep.delays == [2.0, 4.0, 8.0]
    assert len(recorder.warnings) == 1


def test_timeout_is_checked_before_polling(clock, fake_sleep) -> None:
    recorder = Recorder()
    source = ScriptedSource(snap(JobState.PROCESSING))
    poller = make_poller(source, clock, fake_sleep, recorder, started_at=clock() - 16 * 60)

    assert asyncio.run(poller.run()) == PollerState.FAILED
    assert source.calls == 0
    assert recorder.failures == [("job_1", "Job timed out after 15 minutes")]
    assert isinstance(poller.error, JobTimeout)
    assert poller.error.minutes == 15


def test_timeout_is_checked_after_each_response(clock, fake_sleep) -> None:
    recorder = Recorder()
    source = ScriptedSource(snap(JobState.PROCESSING), before_return=lambda: clock.advance(16 * 60))
    poller = make_poller(source, clock, fake_sleep, recorder)

    assert asyncio.run(poller.run()) == PollerState.FAILED
    assert source.calls == 1
    assert recorder.failures == [("job_1", "Job timed out after 15 minutes")]


def test_response_after_cancel_is_discarded(clock, fake_sleep) -> None:
    recorder = Recorder()
    holder: dict[str, StatusPoller] = {}
    source = ScriptedSource(snap(JobState.COMPLETED), before_return=lambda: holder["poller"].cancel())
    poller = make_poller(source, clock, fake_sleep, recorder)
    holder["poller"] = poller

    assert asyncio.run(poller.run()) == PollerState.CANCELLED
    assert recorder.updates == []
    assert recorder.completed == []
    assert recorder.failures == []


def test_async_callbacks_are_awaited(clock, fake_sleep) -> None:
    seen: list[str] = []

    async def on_complete(snapshot: JobSnapshot) -> None:
        await asyncio.sleep(0)
        seen.append(snapshot.job_id)

    poller = StatusPoller(
        "job_1",
        ScriptedSource(snap(JobState.COMPLETED)),
        POLLING,
        on_complete=on_complete,
        clock=clock,
        sleep=fake_sleep,
    )
    asyncio.run(poller.run())
    assert seen == ["job_1"]


def test_cancel_wakes_default_sleep() -> None:
    source = ScriptedSource(snap(JobState.PROCESSING))
    poller = StatusPoller("job_1", source, POLLING)

    async def scenario() -> PollerState:
        task = asyncio.create_task(poller.run())
        while source.calls == 0:
            await asyncio.sleep(0)
        poller.cancel()
        return await asyncio.wait_for(task, timeout=1)

    assert asyncio.run(scenario()) == PollerState.CANCELLED
    assert source.calls == 1
