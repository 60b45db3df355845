"""Pydantic schemas for generation jobs, tracking records and notifications."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from newsai.core.constants import TERMINAL_STATES, GenerationMode, JobState

Duration = Literal[30, 60]


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class JobSnapshot(CamelModel):
    job_id: str = Field(alias="jobId", min_length=1)
    status: JobState
    progress: Optional[str] = None
    queue_position: Optional[int] = Field(default=None, alias="queuePosition")
    error: Optional[str] = None
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES


class GenerateVideoRequest(CamelModel):
    mode: GenerationMode
    duration: Duration = 30
    selected_host: str = Field(alias="selectedHost")
    selected_guest: Optional[str] = Field(default=None, alias="selectedGuest")
    single_character_text: Optional[str] = Field(default=None, alias="singleCharacterText")
    host1_text: Optional[str] = Field(default=None, alias="host1Text")
    guest1_text: Optional[str] = Field(default=None, alias="guest1Text")
    host2_text: Optional[str] = Field(default=None, alias="host2Text")
    title: Optional[str] = None

    def script_text(self, field: str) -> str:
        return self.model_dump(by_alias=True).get(field) or ""

    def to_rendering_payload(self) -> dict[str, Any]:
        return self.model_dump(
            mode="json",
            by_alias=True,
            exclude_none=True,
            exclude={"duration", "title"},
        )


class SubmitResult(CamelModel):
    job_id: str = Field(alias="jobId")
    credits_deducted: int = Field(alias="creditsDeducted")
    remaining_credits: int = Field(alias="remainingCredits")


class PendingJob(CamelModel):
    job_id: str = Field(alias="jobId")
    title: str
    started_at: datetime = Field(alias="startedAt")
    duration_seconds: Duration = Field(alias="durationSeconds")
    last_status: Optional[JobSnapshot] = Field(default=None, alias="lastStatus")


class TrackedJobOut(CamelModel):
    job_id: str = Field(alias="jobId")
    title: str
    started_at: datetime = Field(alias="startedAt")
    duration_seconds: Duration = Field(alias="durationSeconds")
    status: JobState
    progress: Optional[str] = None
    progress_percent: int = Field(alias="progressPercent")
    step_index: Optional[int] = Field(default=None, alias="stepIndex")


class ReconcileRequest(CamelModel):
    job_id: str = Field(alias="jobId", min_length=1)
    duration: Duration


class ReconcileResult(CamelModel):
    success: bool
    job_id: str = Field(alias="jobId")
    refund_amount: int = Field(default=0, alias="refundAmount")
    new_balance: Optional[int] = Field(default=None, alias="newBalance")
    current_status: Optional[JobState] = Field(default=None, alias="currentStatus")
    reason: Optional[str] = None
    error: Optional[str] = None


class RefundOutcome(CamelModel):
    job_id: str = Field(alias="jobId")
    refunded: bool
    amount: int = 0
    new_balance: Optional[int] = Field(default=None, alias="newBalance")
    already_refunded: bool = Field(default=False, alias="alreadyRefunded")
    error: Optional[str] = None


NotificationKind = Literal["completed", "failed", "cancelled", "warning", "refund", "refund_failed"]


class Notification(CamelModel):
    kind: NotificationKind
    job_id: str = Field(alias="jobId")
    title: str
    message: str
    created_at: datetime = Field(alias="createdAt")


class JobOut(JobSnapshot):
    progress_percent: int = Field(alias="progressPercent")
    step_index: Optional[int] = Field(default=None, alias="stepIndex")
