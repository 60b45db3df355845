"""Pydantic schemas for persisted app configuration."""

from __future__ import annotations

from pydantic import BaseModel, Field, model_validator

from newsai.core.constants import PROCESSING_CEILING, PROCESSING_FLOOR, PROGRESS_RULES, STATUS_PROGRESS


class RenderingConfig(BaseModel):
    base_url: str = "http://localhost:3001"
    api_key: str = ""
    request_timeout_s: float = 30.0
    submit_timeout_s: float = 60.0
    reconcile_timeout_s: float = 5.0
    video_timeout_s: float = 180.0


class PollingConfig(BaseModel):
    interval_ms: int = 2000
    error_interval_ms: int = 3000
    backoff_base_ms: int = 2000
    backoff_multiplier: float = 1.5
    rate_limit_multiplier: float = 2.0
    backoff_cap_ms: int = 20000
    max_consecutive_errors: int = 7
    warning_threshold: int = 3
    job_timeout_s: int = 15 * 60
    aggregator_interval_ms: int = 3000


class CreditsConfig(BaseModel):
    cost_table: dict[int, int] = Field(default_factory=lambda: {30: 10, 60: 20})
    char_budget: dict[int, int] = Field(default_factory=lambda: {30: 550, 60: 1100})
    segment_split: dict[str, float] = Field(
        default_factory=lambda: {"host1Text": 0.3, "guest1Text": 0.4, "host2Text": 0.3}
    )
    credits_per_pack: int = 50


class TrackingConfig(BaseModel):
    pending_max_age_s: int = 2 * 60 * 60
    stale_after_s: int = 20 * 60
    sweep_interval_min: int = Field(default=5, ge=1, le=59)


class ProgressConfig(BaseModel):
    """Display ladder for progress bars. Never consulted for job state."""

    status_percent: dict[str, int] = Field(
        default_factory=lambda: {state.value: percent for state, percent in STATUS_PROGRESS.items()}
    )
    processing_floor: int = PROCESSING_FLOOR
    processing_ceiling: int = PROCESSING_CEILING
    step_percent: dict[int, int] = Field(default_factory=lambda: {rule.step: rule.percent for rule in PROGRESS_RULES})


class AppConfig(BaseModel):
    rendering: RenderingConfig = Field(default_factory=RenderingConfig)
    polling: PollingConfig = Field(default_factory=PollingConfig)
    credits: CreditsConfig = Field(default_factory=CreditsConfig)
    tracking: TrackingConfig = Field(default_factory=TrackingConfig)
    progress: ProgressConfig = Field(default_factory=ProgressConfig)

    @model_validator(mode="after")
    def _stale_sweep_outlives_pollers(self) -> "AppConfig":
        # The sweep runs in the worker process and cannot see live pollers.
        if self.tracking.stale_after_s <= self.polling.job_timeout_s:
            raise ValueError("tracking.stale_after_s must exceed polling.job_timeout_s")
        return self
