"""Per-user job snapshots and the pending-job ledger used for resumption."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import ValidationError as SchemaError

from newsai.schemas.job import JobSnapshot, PendingJob
from newsai.services.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

JOBS_SCOPE_PREFIX = "jobs:"
PENDING_SCOPE_PREFIX = "pending:"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobStore:
    def __init__(self, store: KeyValueStore, user_id: str) -> None:
        self._store = store
        self.user_id = user_id
        self._scope = f"{JOBS_SCOPE_PREFIX}{user_id}"

    def save_job(self, job: JobSnapshot) -> JobSnapshot:
        self._store.put(self._scope, job.job_id, job.model_dump(mode="json", by_alias=True))
        return job

    def get_job(self, job_id: str) -> Optional[JobSnapshot]:
        raw = self._store.get(self._scope, job_id)
        if raw is None:
            return None
        try:
            return JobSnapshot.model_validate(raw)
        except SchemaError:
            logger.warning("dropping unreadable job snapshot %s for user %s", job_id, self.user_id)
            self._store.delete(self._scope, job_id)
            return None

    def remove_job(self, job_id: str) -> bool:
        return self._store.delete(self._scope, job_id)

    def list_jobs(self) -> list[JobSnapshot]:
        jobs: list[JobSnapshot] = []
        for job_id, raw in self._store.items(self._scope):
            try:
                jobs.append(JobSnapshot.model_validate(raw))
            except SchemaError:
                logger.warning("skipping unreadable job snapshot %s for user %s", job_id, self.user_id)
        return jobs


class PendingJobLedger:
    def __init__(self, store: KeyValueStore, user_id: str, max_age_s: int = 2 * 60 * 60) -> None:
        self._store = store
        self.user_id = user_id
        self.max_age = timedelta(seconds=max_age_s)
        self._scope = f"{PENDING_SCOPE_PREFIX}{user_id}"

    def _write(self, entry: PendingJob) -> PendingJob:
        self._store.put(self._scope, entry.job_id, entry.model_dump(mode="json", by_alias=True))
        return entry

    def add(
        self,
        job_id: str,
        title: str,
        duration_seconds: int,
        started_at: Optional[datetime] = None,
        last_status: Optional[JobSnapshot] = None,
    ) -> PendingJob:
        entry = PendingJob(
            job_id=job_id,
            title=title,
            started_at=started_at or _utc_now(),
            duration_seconds=duration_seconds,
            last_status=last_status,
        )
        return self._write(entry)

    def get(self, job_id: str) -> Optional[PendingJob]:
        raw = self._store.get(self._scope, job_id)
        if raw is None:
            return None
        try:
            return PendingJob.model_validate(raw)
        except SchemaError:
            logger.warning("dropping unreadable pending job %s for user %s", job_id, self.user_id)
            self._store.delete(self._scope, job_id)
            return None

    def update_status(self, job_id: str, snapshot: JobSnapshot) -> Optional[PendingJob]:
        entry = self.get(job_id)
        if entry is None:
            return None
        return self._write(entry.model_copy(update={"last_status": snapshot}))

    def remove(self, job_id: str) -> bool:
        return self._store.delete(self._scope, job_id)

    def is_expired(self, entry: PendingJob, now: Optional[datetime] = None) -> bool:
        return (now or _utc_now()) - entry.started_at > self.max_age

    def list_entries(self, now: Optional[datetime] = None, include_expired: bool = False) -> list[PendingJob]:
        entries: list[PendingJob] = []
        for job_id, raw in self._store.items(self._scope):
            try:
                entry = PendingJob.model_validate(raw)
            except SchemaError:
                logger.warning("skipping unreadable pending job %s for user %s", job_id, self.user_id)
                continue
            if include_expired or not self.is_expired(entry, now):
                entries.append(entry)
        entries.sort(key=lambda entry: entry.started_at)
        return entries


def pending_user_ids(store: KeyValueStore) -> list[str]:
    return [scope[len(PENDING_SCOPE_PREFIX):] for scope in store.scopes(PENDING_SCOPE_PREFIX)]
