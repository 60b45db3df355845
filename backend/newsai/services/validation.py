"""Validation for generation requests before any credit or network work."""

from __future__ import annotations

from newsai.core.constants import GUESTS, HOST_GUEST_FIELDS, HOSTS, GenerationMode
from newsai.core.errors import ValidationError
from newsai.schemas.config import CreditsConfig
from newsai.schemas.job import GenerateVideoRequest


def char_budget(duration_seconds: int, credits: CreditsConfig) -> int:
    budget = credits.char_budget.get(int(duration_seconds))
    if budget is None:
        raise ValidationError(f"Unsupported duration: {duration_seconds}", field="duration")
    return budget


def segment_budgets(duration_seconds: int, credits: CreditsConfig) -> dict[str, int]:
    total = char_budget(duration_seconds, credits)
    return {field: int(total * share) for field, share in credits.segment_split.items()}


def _require_text(request: GenerateVideoRequest, field: str) -> str:
    text = request.script_text(field)
    if not text.strip():
        raise ValidationError(f"{field} is required", field=field)
    return text


def _check_length(field: str, text: str, limit: int) -> None:
    if len(text) > limit:
        raise ValidationError(
            f"{field} exceeds {limit} character limit ({len(text)} characters)",
            field=field,
        )


def validate_generation_request(request: GenerateVideoRequest, credits: CreditsConfig) -> GenerateVideoRequest:
    if request.selected_host not in HOSTS:
        raise ValidationError(f"Unknown host: {request.selected_host}", field="selectedHost")
    if request.selected_guest is not None and request.selected_guest not in GUESTS:
        raise ValidationError(f"Unknown guest: {request.selected_guest}", field="selectedGuest")

    if request.mode == GenerationMode.SINGLE:
        text = _require_text(request, "singleCharacterText")
        _check_length("singleCharacterText", text, char_budget(request.duration, credits))
        return request

    if not request.selected_guest:
        raise ValidationError("selectedGuest is required for host_guest_host mode", field="selectedGuest")
    budgets = segment_budgets(request.duration, credits)
    for field in HOST_GUEST_FIELDS:
        text = _require_text(request, field)
        _check_length(field, text, budgets[field])
    return request
