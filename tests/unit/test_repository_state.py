from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from newsai.db.base import Base
from newsai.models import CreditRefund, KeyValueEntry, ProcessedPaymentEvent, User
from newsai.services import repository


def test_balance_and_refund_flow_in_memory() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    LocalSession = sessionmaker(bind=engine, class_=Session)

    with LocalSession() as db:
        user = repository.get_or_create_user(db, "user_1", email="anchor@example.com")
        repository.increment_balance(db, user.id, 15)
        db.commit()

        assert repository.decrement_balance_if_sufficient(db, user.id, 10) is True
        assert repository.decrement_balance_if_sufficient(db, user.id, 10) is False
        assert repository.read_balance(db, user.id) == 5

        repository.insert_refund(db, user_id=user.id, job_id="job_1", refund_amount=10, reason="render crashed")
        db.commit()

        refund = repository.get_refund(db, "job_1")
        assert refund is not None
        assert refund.refund_amount == 10
        assert [r.job_id for r in repository.list_refunds(db, user.id)] == ["job_1"]
        assert repository.get_or_create_user(db, "user_1").id == user.id


def test_key_value_rows_roundtrip_in_memory() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    LocalSession = sessionmaker(bind=engine, class_=Session)

    with LocalSession() as db:
        repository.put_entry(db, "pending:user_1", "job_b", {"jobId": "job_b"})
        repository.put_entry(db, "pending:user_1", "job_a", {"jobId": "job_a"})
        repository.put_entry(db, "pending:user_1", "job_a", {"jobId": "job_a", "title": "Updated"})
        repository.put_entry(db, "jobs:user_1", "job_a", {"jobId": "job_a"})
        db.commit()

        assert repository.get_entry(db, "pending:user_1", "job_a") == {"jobId": "job_a", "title": "Updated"}
        assert [key for key, _ in repository.list_entries(db, "pending:user_1")] == ["job_a", "job_b"]
        assert repository.list_scopes(db, "pending:") == ["pending:user_1"]

        assert repository.delete_entry(db, "pending:user_1", "job_b") is True
        assert repository.delete_entry(db, "pending:user_1", "job_b") is False


# Keep explicit imports referenced for SQLAlchemy mapper configuration.
_ = (CreditRefund, KeyValueEntry, ProcessedPaymentEvent, User)
