"""Persistence helpers for credit accounts, refunds and key-value rows."""

from __future__ import annotations

import json
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from newsai.models.credit import CreditRefund, ProcessedPaymentEvent, User
from newsai.models.kv import KeyValueEntry


def _json_load(value: str) -> dict[str, Any]:
    try:
        loaded = json.loads(value)
    except json.JSONDecodeError:
        return {}
    return loaded if isinstance(loaded, dict) else {}


def get_user(db: Session, external_id: str) -> Optional[User]:
    stmt = select(User).where(User.external_id == external_id)
    return db.scalars(stmt).first()


def get_or_create_user(db: Session, external_id: str, email: Optional[str] = None) -> User:
    user = get_user(db, external_id)
    if user:
        return user
    user = User(external_id=external_id, email=email, credit_balance=0)
    db.add(user)
    db.flush()
    return user


def decrement_balance_if_sufficient(db: Session, user_id: int, amount: int) -> bool:
    stmt = (
        update(User)
        .where(User.id == user_id, User.credit_balance >= amount)
        .values(credit_balance=User.credit_balance - amount)
    )
    result = db.execute(stmt)
    db.flush()
    return result.rowcount == 1


def increment_balance(db: Session, user_id: int, amount: int) -> None:
    stmt = update(User).where(User.id == user_id).values(credit_balance=User.credit_balance + amount)
    db.execute(stmt)
    db.flush()


def read_balance(db: Session, user_id: int) -> int:
    stmt = select(User.credit_balance).where(User.id == user_id)
    return int(db.scalars(stmt).one())


def get_refund(db: Session, job_id: str) -> Optional[CreditRefund]:
    stmt = select(CreditRefund).where(CreditRefund.job_id == job_id)
    return db.scalars(stmt).first()


def insert_refund(db: Session, *, user_id: int, job_id: str, refund_amount: int, reason: str) -> CreditRefund:
    refund = CreditRefund(user_id=user_id, job_id=job_id, refund_amount=refund_amount, reason=reason)
    db.add(refund)
    db.flush()
    return refund


def list_refunds(db: Session, user_id: int) -> list[CreditRefund]:
    stmt = select(CreditRefund).where(CreditRefund.user_id == user_id).order_by(CreditRefund.id.asc())
    return list(db.scalars(stmt))


def get_payment_event(db: Session, event_id: str) -> Optional[ProcessedPaymentEvent]:
    return db.get(ProcessedPaymentEvent, event_id)


def insert_payment_event(db: Session, *, event_id: str, user_id: int, credits_added: int) -> ProcessedPaymentEvent:
    event = ProcessedPaymentEvent(event_id=event_id, user_id=user_id, credits_added=credits_added)
    db.add(event)
    db.flush()
    return event


def get_entry(db: Session, scope: str, key: str) -> Optional[dict[str, Any]]:
    entry = db.get(KeyValueEntry, (scope, key))
    if not entry:
        return None
    return _json_load(entry.value_json)


def put_entry(db: Session, scope: str, key: str, value: dict[str, Any]) -> KeyValueEntry:
    payload = json.dumps(value, ensure_ascii=False)
    entry = db.get(KeyValueEntry, (scope, key))
    if entry:
        entry.value_json = payload
    else:
        entry = KeyValueEntry(scope=scope, key=key, value_json=payload)
        db.add(entry)
    db.flush()
    return entry


def delete_entry(db: Session, scope: str, key: str) -> bool:
    entry = db.get(KeyValueEntry, (scope, key))
    if not entry:
        return False
    db.delete(entry)
    db.flush()
    return True


def list_entries(db: Session, scope: str) -> list[tuple[str, dict[str, Any]]]:
    stmt = select(KeyValueEntry).where(KeyValueEntry.scope == scope).order_by(KeyValueEntry.key.asc())
    return [(entry.key, _json_load(entry.value_json)) for entry in db.scalars(stmt)]


def list_scopes(db: Session, prefix: str) -> list[str]:
    stmt = (
        select(KeyValueEntry.scope)
        .where(KeyValueEntry.scope.startswith(prefix))
        .distinct()
        .order_by(KeyValueEntry.scope.asc())
    )
    return list(db.scalars(stmt))
