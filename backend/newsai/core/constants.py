"""Project-wide constants and state definitions."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class JobState(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_STATES = {JobState.PENDING, JobState.QUEUED, JobState.PROCESSING}

TERMINAL_STATES = {JobState.COMPLETED, JobState.FAILED}


class PollerState(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


POLLER_TERMINAL_STATES = {PollerState.COMPLETED, PollerState.FAILED, PollerState.CANCELLED}


class GenerationMode(str, Enum):
    SINGLE = "single"
    HOST_GUEST_HOST = "host_guest_host"


SCRIPT_FIELDS = ("singleCharacterText", "host1Text", "guest1Text", "host2Text")
HOST_GUEST_FIELDS = ("host1Text", "guest1Text", "host2Text")

HOSTS = {
    "lh": "Lester Holt",
    "AC": "Anderson Cooper",
    "TC": "Tucker Carlson",
    "DM": "David Muir",
}

GUESTS = {
    "RE": "Richard Engel",
    "HW": "Holly Williams",
    "AM": "Andrea Mitchell",
}

CANCEL_REASON = "User cancelled job"
STALE_REFUND_REASON = "Stale job cleanup - server was unreachable"
DEFAULT_FAILURE_REASON = "Video generation failed"

STATUS_PROGRESS = {
    JobState.PENDING: 5,
    JobState.QUEUED: 10,
    JobState.COMPLETED: 100,
    JobState.FAILED: 0,
}

PROCESSING_FLOOR = 15
PROCESSING_CEILING = 95

PIPELINE_STEPS = (
    "Generate Audio",
    "Process Video Footage",
    "Add Background Music",
    "Upload for Lipsync",
    "Lipsync Processing",
    "Download Lipsync Result",
    "Finalize Video",
    "Add Outro",
    "Save Video",
    "Upload Final Video",
    "Complete",
)


@dataclass(frozen=True)
class ProgressRule:
    """One row of the display heuristic.

    ``patterns`` is a tuple of alternatives; an alternative matches when every
    substring in it occurs in the lowercased progress text.
    """

    step: int
    percent: int
    patterns: tuple[tuple[str, ...], ...]

    def matches(self, text: str) -> bool:
        return any(all(part in text for part in alternative) for alternative in self.patterns)


# Evaluated top to bottom. Rows whose phrases contain another row's phrase come
# first, so "lipsync processing completed" never lands on the lipsync-in-progress row.
PROGRESS_RULES: tuple[ProgressRule, ...] = (
    ProgressRule(5, 70, (("lipsync processing completed",), ("downloading result",))),
    ProgressRule(10, 95, (("video processing completed",), ("processing completed successfully",))),
    ProgressRule(9, 95, (("uploading final video to s3",), ("upload progress",))),
    ProgressRule(8, 90, (("video saved locally",), ("saved locally",))),
    ProgressRule(7, 85, (("adding outro",), ("outro added",))),
    ProgressRule(6, 80, (("finalizing video",), ("video finalized",))),
    ProgressRule(3, 50, (("uploading", "lipsync"), ("upload for lipsync",))),
    ProgressRule(4, 60, (("lipsync processing in progress",), ("starting lipsync processing",))),
    ProgressRule(2, 40, (("adding background music",), ("background music",))),
    ProgressRule(1, 30, (("processing video",), ("concatenating",))),
    ProgressRule(0, 20, (("generating audio",), ("processing audio generation",))),
)
