import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base, unit_of_work
from errors import Conflict, StorageFailure
from models import Budget, Wallet


def test_unclassified_constraint_violation_is_a_storage_failure() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        with pytest.raises(StorageFailure) as excinfo:
            with unit_of_work(session):
                session.add(Budget(month="2024-06-01", amount=10))
                session.flush()

        assert excinfo.value.reason == "storage_failure"
        assert excinfo.value.message == "Database error"
        assert session.scalar(select(func.count(Budget.id))) == 0


def test_ledger_errors_roll_back_and_propagate_unchanged() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        with pytest.raises(Conflict, match="stop"):
            with unit_of_work(session):
                session.add(Wallet(name="Cash", currency="IDR"))
                session.flush()
                raise Conflict("stop")

        assert session.scalar(select(func.count(Wallet.id))) == 0


def test_successful_block_commits() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        with unit_of_work(session):
            session.add(Wallet(name="Cash", currency="IDR"))

    with Session(engine) as other:
        assert other.scalar(select(func.count(Wallet.id))) == 1
