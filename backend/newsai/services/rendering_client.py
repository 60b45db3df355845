"""HTTP client for the external rendering service."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

import httpx
from pydantic import ValidationError as SchemaError

from newsai.core.errors import (
    PermanentPollError,
    PollError,
    RenderingServiceError,
    SubmissionFailed,
    TransientPollError,
    VideoNotFound,
)
from newsai.schemas.config import RenderingConfig
from newsai.schemas.job import JobSnapshot

logger = logging.getLogger(__name__)

USER_AGENT = "NewsAI-Status-Client/1.0"
VIDEO_URL_KEYS = ("s3Url", "videoUrl", "url")
PASSTHROUGH_HEADERS = ("content-length", "content-range")


def classify_status_code(status_code: int, reason: str = "") -> Optional[PollError]:
    """Map an HTTP status from a poll to the error it represents, if any."""
    if status_code < 400:
        return None
    if status_code == 429:
        return TransientPollError("Rate limit exceeded (429)", status_code=status_code, rate_limited=True)
    if status_code >= 500:
        return TransientPollError(f"Server temporarily unavailable ({status_code})", status_code=status_code)
    return PermanentPollError(f"Request error ({status_code}): {reason}".rstrip(": "), status_code=status_code)


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:500]
    if isinstance(payload, dict):
        for key in ("error", "detail", "message"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return response.text[:500]


def parse_status_payload(response: httpx.Response) -> JobSnapshot:
    content_type = response.headers.get("content-type", "")
    if "application/json" not in content_type:
        raise TransientPollError("Invalid response format - expected JSON", status_code=response.status_code)
    try:
        payload = response.json()
    except ValueError as exc:
        raise TransientPollError("Failed to parse response JSON", status_code=response.status_code) from exc
    if not isinstance(payload, dict) or not payload.get("jobId") or not payload.get("status"):
        raise TransientPollError(
            "Invalid response structure - missing required fields", status_code=response.status_code
        )
    try:
        return JobSnapshot.model_validate(payload)
    except SchemaError as exc:
        raise TransientPollError(
            f"Invalid response structure - {exc.error_count()} invalid fields", status_code=response.status_code
        ) from exc


@dataclass
class VideoStream:
    status_code: int
    media_type: str
    headers: dict[str, str]
    response: httpx.Response
    client: httpx.AsyncClient
    extra: dict[str, Any] = field(default_factory=dict)

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self.response.aiter_bytes():
                yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        await self.response.aclose()
        await self.client.aclose()


class RenderingClient:
    def __init__(self, cfg: RenderingConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._cfg = cfg
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        if self._cfg.api_key:
            headers["Authorization"] = f"Bearer {self._cfg.api_key}"
        return headers

    def _client(self, timeout_s: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._cfg.base_url.rstrip("/"),
            headers=self._headers(),
            timeout=timeout_s,
            transport=self._transport,
        )

    async def submit_generation(self, payload: dict[str, Any]) -> str:
        try:
            async with self._client(self._cfg.submit_timeout_s) as client:
                resp = await client.post("/generate-video", json=payload)
        except httpx.HTTPError as exc:
            logger.error("rendering service unreachable on submit: %s", exc)
            raise SubmissionFailed(f"Failed to start video generation: {exc}") from exc

        if resp.status_code >= 400:
            detail = _error_detail(resp)
            logger.error("rendering service rejected submission: %s %s", resp.status_code, detail)
            raise SubmissionFailed(f"Failed to start video generation: {detail or resp.status_code}")

        try:
            data = resp.json()
        except ValueError as exc:
            raise SubmissionFailed("Failed to start video generation: invalid JSON response") from exc

        job_id = data.get("jobId") if isinstance(data, dict) else None
        if not isinstance(job_id, str) or not job_id.strip():
            raise SubmissionFailed("Failed to start video generation: response missing jobId")
        return job_id.strip()

    async def fetch_status(self, job_id: str, timeout_s: Optional[float] = None) -> JobSnapshot:
        effective_timeout = timeout_s or self._cfg.request_timeout_s
        try:
            async with self._client(effective_timeout) as client:
                resp = await client.get(f"/status/{job_id}", headers={"Cache-Control": "no-cache"})
        except httpx.TimeoutException as exc:
            raise TransientPollError(f"Request timeout after {effective_timeout}s") from exc
        except httpx.HTTPError as exc:
            raise TransientPollError(f"Network error: {exc}") from exc

        error = classify_status_code(resp.status_code, resp.reason_phrase)
        if error is not None:
            raise error
        return parse_status_payload(resp)

    async def _open_stream(
        self,
        client: httpx.AsyncClient,
        url: str,
        range_header: Optional[str],
    ) -> httpx.Response:
        headers = {"Range": range_header} if range_header else {}
        request = client.build_request("GET", url, headers=headers)
        return await client.send(request, stream=True)

    async def open_video_stream(self, job_id: str, range_header: Optional[str] = None) -> VideoStream:
        """Open the rendered video for streaming.

        The service either streams the file itself or answers with JSON naming
        a storage URL, which is then fetched with the same Range header.
        """
        client = self._client(self._cfg.video_timeout_s)
        try:
            resp = await self._open_stream(client, f"/video/{job_id}", range_header)
            if resp.status_code == 404:
                await resp.aclose()
                raise VideoNotFound(f"Video not found: {job_id}")
            if resp.status_code >= 400:
                await resp.aclose()
                raise RenderingServiceError(f"Failed to fetch video: HTTP {resp.status_code}")

            content_type = resp.headers.get("content-type", "")
            if "application/json" in content_type:
                await resp.aread()
                payload = resp.json()
                await resp.aclose()
                video_url = next(
                    (payload.get(key) for key in VIDEO_URL_KEYS if isinstance(payload, dict) and payload.get(key)),
                    None,
                )
                if not video_url:
                    raise RenderingServiceError("No video URL found in response")
                resp = await self._open_stream(client, str(video_url), range_header)
                if resp.status_code >= 400:
                    await resp.aclose()
                    raise RenderingServiceError(f"Failed to fetch video from storage: {resp.status_code}")
                content_type = resp.headers.get("content-type", "")
        except httpx.HTTPError as exc:
            await client.aclose()
            raise RenderingServiceError(f"Failed to fetch video: {exc}") from exc
        except Exception:
            await client.aclose()
            raise

        headers = {name: resp.headers[name] for name in PASSTHROUGH_HEADERS if name in resp.headers}
        headers["Accept-Ranges"] = resp.headers.get("accept-ranges", "bytes")
        headers["Cache-Control"] = "public, max-age=3600"
        return VideoStream(
            status_code=206 if resp.status_code == 206 else 200,
            media_type=content_type or "video/mp4",
            headers=headers,
            response=resp,
            client=client,
        )
