"""Domain error taxonomy for submission, polling and refunds."""

from __future__ import annotations

from typing import Optional


class GenerationError(RuntimeError):
    pass


class ValidationError(GenerationError):
    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class InsufficientCredits(GenerationError):
    def __init__(self, required: int, balance: int) -> None:
        super().__init__(
            f"Insufficient credits. You need {required} credits but only have {balance}."
        )
        self.required = required
        self.balance = balance

    @property
    def shortfall(self) -> int:
        return max(0, self.required - self.balance)


class SubmissionFailed(GenerationError):
    pass


class PollError(GenerationError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientPollError(PollError):
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        rate_limited: bool = False,
    ) -> None:
        super().__init__(message, status_code)
        self.rate_limited = rate_limited


class PermanentPollError(PollError):
    pass


class JobTimeout(GenerationError):
    def __init__(self, minutes: int) -> None:
        super().__init__(f"Job timed out after {minutes} minutes")
        self.minutes = minutes


class JobNotFound(GenerationError):
    pass


class RefundConflict(GenerationError):
    def __init__(self, job_id: str, amount: int) -> None:
        super().__init__(f"Refund already processed for job {job_id}")
        self.job_id = job_id
        self.amount = amount


class RefundFailed(GenerationError):
    pass


class VideoNotFound(GenerationError):
    pass


class RenderingServiceError(GenerationError):
    pass
