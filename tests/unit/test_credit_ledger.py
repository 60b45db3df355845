import pytest
from sqlalchemy.exc import SQLAlchemyError

from newsai.core.errors import InsufficientCredits, RefundFailed, ValidationError
from newsai.services import repository


def test_check_credits_uses_cost_table(ledger, fund) -> None:
    fund("user_1", 15)

    short = ledger.check_credits("user_1", 60)
    assert short.has_enough is False
    assert (short.required, short.balance, short.shortfall) == (20, 15, 5)

    enough = ledger.check_credits("user_1", 30)
    assert enough.has_enough is True
    assert enough.shortfall == 0


def test_unknown_duration_is_rejected(ledger) -> None:
    with pytest.raises(ValidationError):
        ledger.cost_for(45)


def test_deduct_never_goes_negative(ledger, fund) -> None:
    fund("user_1", 5)

    with pytest.raises(InsufficientCredits) as exc_info:
        ledger.deduct("user_1", 10)

    assert exc_info.value.shortfall == 5
    assert "You need 10 credits but only have 5" in str(exc_info.value)
    assert ledger.balance("user_1") == 5


def test_deduct_exact_balance_reaches_zero(ledger, fund) -> None:
    fund("user_1", 10)
    assert ledger.deduct("user_1", 10) == 0
    assert ledger.balance("user_1") == 0


def test_refund_is_applied_once(ledger, fund) -> None:
    fund("user_1", 30)
    ledger.deduct("user_1", 20)

    first = ledger.refund("job_a", "user_1", 20, "render crashed")
    second = ledger.refund("job_a", "user_1", 20, "User cancelled job")

    assert first.applied is True
    assert first.new_balance == 30
    assert second.applied is False
    assert second.amount == 20
    assert ledger.balance("user_1") == 30

    refunds = ledger.list_refunds("user_1")
    assert [(r.job_id, r.refund_amount, r.reason) for r in refunds] == [("job_a", 20, "render crashed")]


def test_refund_race_on_unique_constraint_reports_not_applied(ledger, fund, monkeypatch) -> None:
    fund("user_1", 0)
    ledger.refund("job_a", "user_1", 10, "first writer")

    real_get_refund = repository.get_refund
    calls = {"count": 0}

    def stale_read(db, job_id):
        calls["count"] += 1
        if calls["count"] == 1:
            return None
        return real_get_refund(db, job_id)

    monkeypatch.setattr(repository, "get_refund", stale_read)

    result = ledger.refund("job_a", "user_1", 10, "second writer")

    assert result.applied is False
    assert result.amount == 10
    assert ledger.balance("user_1") == 10


def test_refund_failure_leaves_no_partial_state(ledger, fund, monkeypatch) -> None:
    fund("user_1", 0)

    def broken_increment(db, user_id, amount):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(repository, "increment_balance", broken_increment)

    with pytest.raises(RefundFailed):
        ledger.refund("job_a", "user_1", 10, "render crashed")

    monkeypatch.undo()
    assert ledger.get_refund("job_a") is None
    assert ledger.balance("user_1") == 0


def test_refund_for_unknown_user_fails(ledger) -> None:
    with pytest.raises(RefundFailed):
        ledger.refund("job_a", "ghost", 10, "render crashed")


def test_purchase_is_credited_once_per_event(ledger) -> None:
    first = ledger.apply_purchase("evt_1", "user_1", packs=2)
    replay = ledger.apply_purchase("evt_1", "user_1", packs=2)

    assert first.applied is True
    assert first.credits_added == 100
    assert replay.applied is False
    assert replay.new_balance == 100
    assert ledger.balance("user_1") == 100


def test_purchase_with_zero_packs_counts_as_one(ledger) -> None:
    result = ledger.apply_purchase("evt_2", "user_1", packs=0)
    assert result.credits_added == 50
