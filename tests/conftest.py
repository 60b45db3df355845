from __future__ import annotations

import asyncio
import json
import os
import tempfile
import time
from typing import Any, Callable, Optional, Union

os.environ.setdefault("NEWSAI_RUNTIME_DIR", tempfile.mkdtemp(prefix="newsai-tests-"))

import httpx
import pytest
from sqlalchemy.orm import Session, sessionmaker

from newsai.db.base import Base
from newsai.db.session import build_engine, build_session_factory
from newsai.models import CreditRefund, KeyValueEntry, ProcessedPaymentEvent, User  # noqa: F401
from newsai.schemas.config import AppConfig, RenderingConfig
from newsai.services import repository
from newsai.services.credit_ledger import CreditLedger

RENDERING_URL = "http://rendering.test"

Scripted = Union[httpx.Response, dict, str]


class FakeClock:
    def __init__(self, start: Optional[float] = None) -> None:
        self.now = time.time() if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Advance the fake clock instead of waiting."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        self.clock.advance(seconds)
        await asyncio.sleep(0)


class FakeRenderingService:
    """Scripted rendering service served through ``httpx.MockTransport``.

    Status scripts are consumed in order and the last entry repeats. Entries
    are a status payload dict, an ``httpx.Response``, or one of the strings
    ``"network"`` / ``"timeout"`` to raise the matching transport error.
    """

    def __init__(self) -> None:
        self.status_scripts: dict[str, list[Scripted]] = {}
        self.submit_script: list[Scripted] = []
        self.videos: dict[str, httpx.Response] = {}
        self.requests: list[httpx.Request] = []
        self.submitted: list[dict[str, Any]] = []
        self._counter = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def script_status(self, job_id: str, *entries: Scripted) -> None:
        self.status_scripts[job_id] = list(entries)

    def status_calls(self, job_id: str) -> int:
        return sum(1 for request in self.requests if request.url.path == f"/status/{job_id}")

    def _resolve(self, entry: Scripted, request: httpx.Request) -> httpx.Response:
        if entry == "network":
            raise httpx.ConnectError("Connection refused", request=request)
        if entry == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if isinstance(entry, httpx.Response):
            return httpx.Response(entry.status_code, headers=entry.headers, content=entry.content)
        return httpx.Response(200, json=entry)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.method == "POST" and path == "/generate-video":
            self.submitted.append(json.loads(request.content))
            if self.submit_script:
                return self._resolve(self.submit_script.pop(0), request)
            self._counter += 1
            return httpx.Response(200, json={"jobId": f"job_{self._counter}"})

        if path.startswith("/status/"):
            job_id = path.rsplit("/", 1)[-1]
            script = self.status_scripts.get(job_id)
            if not script:
                return httpx.Response(404, json={"error": "Job not found"})
            entry = script.pop(0) if len(script) > 1 else script[0]
            return self._resolve(entry, request)

        video = self.videos.get(str(request.url)) or self.videos.get(path)
        if video is not None:
            return self._resolve(video, request)
        return httpx.Response(404, json={"error": "not found"})


def status_payload(job_id: str, status: str, **extra: Any) -> dict[str, Any]:
    payload = {
        "jobId": job_id,
        "status": status,
        "createdAt": "2024-01-01T00:00:00Z",
        "updatedAt": "2024-01-01T00:00:00Z",
    }
    payload.update(extra)
    return payload


@pytest.fixture
def session_factory(tmp_path) -> sessionmaker[Session]:
    engine = build_engine(f"sqlite:///{tmp_path / 'test.sqlite3'}")
    Base.metadata.create_all(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def config() -> AppConfig:
    return AppConfig(rendering=RenderingConfig(base_url=RENDERING_URL, api_key="test-key"))


@pytest.fixture
def ledger(session_factory: sessionmaker[Session], config: AppConfig) -> CreditLedger:
    return CreditLedger(session_factory, config.credits)


@pytest.fixture
def fund(session_factory: sessionmaker[Session]) -> Callable[[str, int], None]:
    def _fund(user_id: str, amount: int) -> None:
        with session_factory() as db:
            user = repository.get_or_create_user(db, user_id)
            repository.increment_balance(db, user.id, amount)
            db.commit()

    return _fund


@pytest.fixture
def rendering() -> FakeRenderingService:
    return FakeRenderingService()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(clock: FakeClock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture
def make_status() -> Callable[..., dict[str, Any]]:
    return status_payload

