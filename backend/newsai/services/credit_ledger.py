"""Authoritative credit balances with exactly-once refunds and top-ups.

Balance changes and their idempotency witnesses (refund records, processed
payment events) are always written in the same transaction. The unique
constraint on ``credit_refunds.job_id`` is what finally arbitrates between the
automatic failure handler, manual cancellation and the stale-job sweep.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from newsai.core.errors import InsufficientCredits, RefundConflict, RefundFailed, ValidationError
from newsai.models.credit import CreditRefund
from newsai.schemas.config import CreditsConfig
from newsai.schemas.credit import CreditCheck, PurchaseResult, RefundResult
from newsai.services import repository

logger = logging.getLogger(__name__)


class CreditLedger:
    def __init__(self, session_factory: sessionmaker[Session], credits: CreditsConfig) -> None:
        self._session_factory = session_factory
        self._credits = credits

    def cost_for(self, duration_seconds: int) -> int:
        cost = self._credits.cost_table.get(int(duration_seconds))
        if cost is None:
            allowed = ", ".join(str(d) for d in sorted(self._credits.cost_table))
            raise ValidationError(f"Unsupported duration: {duration_seconds}. Allowed: {allowed}", field="duration")
        return cost

    def ensure_account(self, user_id: str, email: Optional[str] = None) -> int:
        with self._session_factory() as db:
            user = repository.get_or_create_user(db, user_id, email=email)
            db.commit()
            return user.credit_balance

    def balance(self, user_id: str) -> int:
        with self._session_factory() as db:
            user = repository.get_user(db, user_id)
            return user.credit_balance if user else 0

    def check_credits(self, user_id: str, duration_seconds: int) -> CreditCheck:
        required = self.cost_for(duration_seconds)
        balance = self.balance(user_id)
        return CreditCheck(
            has_enough=balance >= required,
            required=required,
            balance=balance,
            shortfall=max(0, required - balance),
        )

    def deduct(self, user_id: str, amount: int) -> int:
        if amount < 0:
            raise ValueError("deduction amount must be non-negative")
        with self._session_factory() as db:
            user = repository.get_user(db, user_id)
            if not user:
                raise InsufficientCredits(required=amount, balance=0)
            if not repository.decrement_balance_if_sufficient(db, user.id, amount):
                db.rollback()
                raise InsufficientCredits(required=amount, balance=self.balance(user_id))
            new_balance = repository.read_balance(db, user.id)
            db.commit()
        logger.info("deducted %s credits from user %s, balance now %s", amount, user_id, new_balance)
        return new_balance

    def get_refund(self, job_id: str, user_id: Optional[str] = None) -> Optional[CreditRefund]:
        """Return the refund recorded for ``job_id``, restricted to ``user_id`` when given."""
        with self._session_factory() as db:
            refund = repository.get_refund(db, job_id)
            if refund is None or user_id is None:
                return refund
            user = repository.get_user(db, user_id)
            return refund if user is not None and refund.user_id == user.id else None

    def list_refunds(self, user_id: str) -> list[CreditRefund]:
        with self._session_factory() as db:
            user = repository.get_user(db, user_id)
            if not user:
                return []
            return repository.list_refunds(db, user.id)

    def _claim_refund(self, db: Session, job_id: str, user_id: str, amount: int, reason: str) -> int:
        existing = repository.get_refund(db, job_id)
        if existing:
            raise RefundConflict(job_id, existing.refund_amount)

        user = repository.get_user(db, user_id)
        if not user:
            raise RefundFailed(f"Cannot refund job {job_id}: unknown user {user_id}")

        try:
            repository.insert_refund(db, user_id=user.id, job_id=job_id, refund_amount=amount, reason=reason)
        except IntegrityError as exc:
            db.rollback()
            winner = repository.get_refund(db, job_id)
            if winner is None:
                raise RefundFailed(f"Refund insert for job {job_id} failed: {exc}") from exc
            raise RefundConflict(job_id, winner.refund_amount) from exc

        repository.increment_balance(db, user.id, amount)
        new_balance = repository.read_balance(db, user.id)
        db.commit()
        return new_balance

    def refund(self, job_id: str, user_id: str, amount: int, reason: str) -> RefundResult:
        """Credit ``amount`` back for ``job_id`` at most once.

        Returns ``applied=False`` with the originally recorded amount when some
        other path already refunded the job. Raises ``RefundFailed`` when the
        transaction itself cannot be completed; in that case neither the balance
        nor the refund record has changed.
        """
        if amount < 0:
            raise ValueError("refund amount must be non-negative")
        with self._session_factory() as db:
            try:
                new_balance = self._claim_refund(db, job_id, user_id, amount, reason)
            except RefundConflict as conflict:
                db.rollback()
                logger.info("refund for job %s already recorded (%s credits)", job_id, conflict.amount)
                return RefundResult(applied=False, amount=conflict.amount)
            except RefundFailed:
                db.rollback()
                raise
            except SQLAlchemyError as exc:
                db.rollback()
                logger.error("refund transaction for job %s failed: %s", job_id, exc)
                raise RefundFailed(f"Refund for job {job_id} failed: {exc}") from exc

        logger.info("refunded %s credits to user %s for job %s (%s)", amount, user_id, job_id, reason)
        return RefundResult(applied=True, amount=amount, new_balance=new_balance)

    def apply_purchase(self, event_id: str, user_id: str, packs: int) -> PurchaseResult:
        """Credit a verified purchase once per payment event id."""
        quantity = max(1, int(packs))
        credits_to_add = quantity * self._credits.credits_per_pack
        with self._session_factory() as db:
            user = repository.get_or_create_user(db, user_id)
            if repository.get_payment_event(db, event_id):
                db.rollback()
                return PurchaseResult(applied=False, credits_added=0, new_balance=self.balance(user_id))
            try:
                repository.insert_payment_event(db, event_id=event_id, user_id=user.id, credits_added=credits_to_add)
            except IntegrityError:
                db.rollback()
                return PurchaseResult(applied=False, credits_added=0, new_balance=self.balance(user_id))
            repository.increment_balance(db, user.id, credits_to_add)
            new_balance = repository.read_balance(db, user.id)
            db.commit()

        logger.info(
            "added %s credits (%s packs x %s) to user %s for event %s",
            credits_to_add,
            quantity,
            self._credits.credits_per_pack,
            user_id,
            event_id,
        )
        return PurchaseResult(applied=True, credits_added=credits_to_add, new_balance=new_balance)
