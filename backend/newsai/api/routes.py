"""FastAPI route definitions."""

from __future__ import annotations

import asyncio
import json
import re
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import StreamingResponse
from sqlalchemy import text
from sqlalchemy.orm import Session
from sse_starlette.sse import EventSourceResponse

from newsai.api.deps import get_db_session, get_services, get_user_id
from newsai.core.errors import (
    InsufficientCredits,
    JobNotFound,
    PermanentPollError,
    RenderingServiceError,
    SubmissionFailed,
    TransientPollError,
    ValidationError,
    VideoNotFound,
)
from newsai.core.settings import APP_VERSION, PATHS
from newsai.schemas.config import AppConfig, ProgressConfig
from newsai.schemas.credit import (
    CreditBalanceOut,
    CreditCheck,
    CreditRefundOut,
    PurchaseRequest,
    PurchaseResult,
)
from newsai.schemas.job import (
    Duration,
    GenerateVideoRequest,
    JobOut,
    JobSnapshot,
    Notification,
    ReconcileRequest,
    ReconcileResult,
    RefundOutcome,
    SubmitResult,
    TrackedJobOut,
)
from newsai.services.config_store import apply_env_overrides, load_config, save_config
from newsai.services.container import ServiceContainer
from newsai.services.progress import progress_percent, step_index

router = APIRouter(prefix="/api", tags=["api"])

JOB_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def _check_job_id(job_id: str) -> str:
    if not JOB_ID_PATTERN.match(job_id):
        raise HTTPException(status_code=400, detail="Invalid job ID format")
    return job_id


def _to_job_out(snapshot: JobSnapshot, ladder: ProgressConfig) -> JobOut:
    return JobOut(
        **snapshot.model_dump(),
        progress_percent=progress_percent(snapshot, ladder),
        step_index=step_index(snapshot),
    )


@router.get("/health")
def health(
    db: Session = Depends(get_db_session),
    services: ServiceContainer = Depends(get_services),
) -> dict[str, object]:
    db.execute(text("SELECT 1"))
    return {
        "version": APP_VERSION,
        "rendering_base_url": services.config.rendering.base_url,
        "queue_db": str(PATHS.queue_path),
        "database_ok": True,
    }


@router.get("/config", response_model=AppConfig)
def get_config() -> AppConfig:
    return load_config()


@router.put("/config", response_model=AppConfig)
def put_config(config: AppConfig, services: ServiceContainer = Depends(get_services)) -> AppConfig:
    saved = save_config(config)
    services.apply_config(apply_env_overrides(saved))
    return saved


@router.get("/credits", response_model=CreditCheck)
def check_credits(
    duration: Duration = Query(30),
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
) -> CreditCheck:
    return services.ledger.check_credits(user_id, duration)


@router.get("/credits/balance", response_model=CreditBalanceOut)
def get_balance(
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
) -> CreditBalanceOut:
    return CreditBalanceOut(balance=services.ledger.balance(user_id))


@router.get("/credits/refunds", response_model=list[CreditRefundOut])
def list_refunds(
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
) -> list[CreditRefundOut]:
    return [CreditRefundOut.model_validate(refund) for refund in services.ledger.list_refunds(user_id)]


@router.post("/credits/purchases", response_model=PurchaseResult)
def apply_purchase(
    payload: PurchaseRequest,
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
) -> PurchaseResult:
    return services.ledger.apply_purchase(payload.event_id, user_id, payload.packs)


@router.post("/jobs", response_model=SubmitResult)
async def create_job(
    payload: GenerateVideoRequest,
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
) -> SubmitResult:
    try:
        return await services.orchestrator.submit(user_id, payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except InsufficientCredits as exc:
        raise HTTPException(
            status_code=402,
            detail={
                "error": str(exc),
                "required": exc.required,
                "balance": exc.balance,
                "shortfall": exc.shortfall,
            },
        ) from exc
    except SubmissionFailed as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@router.get("/jobs", response_model=list[JobOut])
def list_jobs(
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
) -> list[JobOut]:
    return [_to_job_out(job, services.config.progress) for job in services.orchestrator.job_store(user_id).list_jobs()]


@router.post("/jobs/reconcile", response_model=ReconcileResult)
async def reconcile_job(
    payload: ReconcileRequest,
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
) -> ReconcileResult:
    _check_job_id(payload.job_id)
    try:
        return await services.orchestrator.reconcile_stale(user_id, payload.job_id, payload.duration)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/jobs/{job_id}", response_model=JobOut)
def get_job(
    job_id: str,
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
) -> JobOut:
    job = services.orchestrator.job_store(user_id).get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return _to_job_out(job, services.config.progress)


@router.delete("/jobs/{job_id}")
def acknowledge_job(
    job_id: str,
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
) -> dict[str, object]:
    if services.orchestrator.is_active(job_id):
        raise HTTPException(status_code=409, detail="Job is still running. Cancel it first.")
    if not services.orchestrator.acknowledge(user_id, job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    return {"deleted": True, "jobId": job_id}


@router.post("/jobs/{job_id}/cancel", response_model=RefundOutcome)
async def cancel_job(
    job_id: str,
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
) -> RefundOutcome:
    try:
        return await services.orchestrator.cancel(user_id, _check_job_id(job_id))
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/status/{job_id}", response_model=JobSnapshot)
async def get_status(
    job_id: str,
    _: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
) -> JobSnapshot:
    _check_job_id(job_id)
    try:
        return await services.client.fetch_status(job_id)
    except PermanentPollError as exc:
        if exc.status_code == 404:
            raise HTTPException(status_code=404, detail="Job not found") from exc
        raise HTTPException(status_code=exc.status_code or 400, detail=str(exc)) from exc
    except TransientPollError as exc:
        raise HTTPException(
            status_code=503,
            detail={"error": "Service temporarily unavailable", "details": str(exc), "retryable": True},
        ) from exc


@router.get("/video/{job_id}")
async def get_video(
    job_id: str,
    range_header: Optional[str] = Header(default=None, alias="Range"),
    services: ServiceContainer = Depends(get_services),
) -> StreamingResponse:
    _check_job_id(job_id)
    try:
        stream = await services.client.open_video_stream(job_id, range_header)
    except VideoNotFound as exc:
        raise HTTPException(status_code=404, detail="Video not found") from exc
    except RenderingServiceError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    headers = dict(stream.headers)
    headers["Content-Disposition"] = f'inline; filename="news-video-{job_id}.mp4"'
    return StreamingResponse(
        stream.iter_bytes(),
        status_code=stream.status_code,
        media_type=stream.media_type,
        headers=headers,
    )


@router.get("/progress", response_model=list[TrackedJobOut])
async def get_progress(
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
) -> list[TrackedJobOut]:
    return services.orchestrator.progress.get(user_id).snapshot()


@router.get("/events")
async def stream_events(
    user_id: str = Depends(get_user_id),
    services: ServiceContainer = Depends(get_services),
) -> EventSourceResponse:
    aggregator = services.orchestrator.progress.get(user_id)
    queue: asyncio.Queue[Notification] = asyncio.Queue()
    unsubscribe = aggregator.subscribe(queue.put_nowait)

    async def event_generator():
        try:
            while True:
                notification = await queue.get()
                payload = notification.model_dump(mode="json", by_alias=True)
                yield {
                    "event": notification.kind,
                    "id": notification.job_id,
                    "data": json.dumps(payload, ensure_ascii=False),
                }
        finally:
            unsubscribe()

    return EventSourceResponse(event_generator())
