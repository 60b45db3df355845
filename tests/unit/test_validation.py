import pytest

from newsai.core.errors import ValidationError
from newsai.schemas.config import CreditsConfig
from newsai.schemas.job import GenerateVideoRequest
from newsai.services.validation import segment_budgets, validate_generation_request

CREDITS = CreditsConfig()


def _single(text: str, duration: int = 30, **extra) -> GenerateVideoRequest:
    return GenerateVideoRequest(mode="single", duration=duration, selectedHost="lh", singleCharacterText=text, **extra)


def _dialogue(host1: str = "Good evening.", guest1: str = "Thanks for having me.", host2: str = "That's all.", **extra):
    payload = {
        "mode": "host_guest_host",
        "selectedHost": "AC",
        "selectedGuest": "RE",
        "host1Text": host1,
        "guest1Text": guest1,
        "host2Text": host2,
    }
    payload.update(extra)
    return GenerateVideoRequest.model_validate(payload)


def test_single_mode_accepts_text_within_budget() -> None:
    validate_generation_request(_single("a" * 550), CREDITS)
    validate_generation_request(_single("a" * 1100, duration=60), CREDITS)


def test_single_mode_rejects_empty_or_long_text() -> None:
    with pytest.raises(ValidationError) as exc_info:
        validate_generation_request(_single("   "), CREDITS)
    assert exc_info.value.field == "singleCharacterText"

    with pytest.raises(ValidationError, match="550 character limit"):
        validate_generation_request(_single("a" * 551), CREDITS)


def test_segment_budgets_are_floored_shares() -> None:
    assert segment_budgets(30, CREDITS) == {"host1Text": 165, "guest1Text": 220, "host2Text": 165}
    assert segment_budgets(60, CREDITS) == {"host1Text": 330, "guest1Text": 440, "host2Text": 330}


def test_dialogue_segments_are_checked_independently() -> None:
    validate_generation_request(_dialogue(host1="a" * 165, guest1="b" * 220, host2="c" * 165), CREDITS)

    with pytest.raises(ValidationError) as exc_info:
        validate_generation_request(_dialogue(guest1="b" * 221), CREDITS)
    assert exc_info.value.field == "guest1Text"


def test_dialogue_requires_every_segment_and_guest() -> None:
    with pytest.raises(ValidationError) as exc_info:
        validate_generation_request(_dialogue(host2=""), CREDITS)
    assert exc_info.value.field == "host2Text"

    with pytest.raises(ValidationError) as exc_info:
        validate_generation_request(_dialogue(selectedGuest=None), CREDITS)
    assert exc_info.value.field == "selectedGuest"


def test_unknown_characters_are_rejected() -> None:
    with pytest.raises(ValidationError, match="Unknown host"):
        validate_generation_request(_single("hello").model_copy(update={"selected_host": "zz"}), CREDITS)

    with pytest.raises(ValidationError, match="Unknown guest"):
        validate_generation_request(_dialogue(selectedGuest="XX"), CREDITS)


def test_rendering_payload_omits_local_fields() -> None:
    payload = _single("hello", title="Morning brief").to_rendering_payload()
    assert payload == {"mode": "single", "selectedHost": "lh", "singleCharacterText": "hello"}
