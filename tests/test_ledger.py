from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from errors import Conflict, NotFound, ValidationFailed
from models import Posting, TransactionEvent, TransactionType
from schemas import ExpenseIn
from services import (
    CategoryService,
    SavingsBucketService,
    TransactionService,
    WalletService,
)

JUNE = datetime(2024, 6, 10, 12, 0)


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def seed(session: Session) -> dict[str, int]:
    wallets = WalletService(session)
    cash = wallets.create({"name": "Cash", "kind": "cash"})
    bank = wallets.create({"name": "Bank", "kind": "bank"})
    food = CategoryService(session).create({"name": "Food", "kind": "expense"})
    salary = CategoryService(session).create({"name": "Salary", "kind": "income"})
    holiday = SavingsBucketService(session).create({"name": "Holiday"})
    return {
        "cash": cash.id,
        "bank": bank.id,
        "food": food.id,
        "salary": salary.id,
        "holiday": holiday.id,
    }


def event_count(session: Session) -> int:
    return session.scalar(select(func.count(TransactionEvent.id)))


def posting_count(session: Session) -> int:
    return session.scalar(select(func.count(Posting.id)))


def test_each_shape_writes_its_posting_template() -> None:
    with make_session() as session:
        ids = seed(session)
        txns = TransactionService(session)

        expense = txns.create_expense(
            {"wallet_id": ids["cash"], "category_id": ids["food"], "amount": 300, "occurred_at": JUNE}
        )
        income = txns.create_income({"wallet_id": ids["bank"], "amount": 1000, "occurred_at": JUNE})
        transfer = txns.create_transfer(
            {"from_wallet_id": ids["bank"], "to_wallet_id": ids["cash"], "amount": 200, "occurred_at": JUNE}
        )
        contribution = txns.create_savings_contribution(
            {"wallet_id": ids["bank"], "bucket_id": ids["holiday"], "amount": 150, "occurred_at": JUNE}
        )
        withdrawal = txns.create_savings_withdrawal(
            {"wallet_id": ids["cash"], "bucket_id": ids["holiday"], "amount": 50, "occurred_at": JUNE}
        )

        assert [(p.wallet_id, p.amount) for p in expense.postings] == [(ids["cash"], -300)]
        assert [(p.wallet_id, p.amount) for p in income.postings] == [(ids["bank"], 1000)]
        assert [(p.wallet_id, p.amount) for p in transfer.postings] == [
            (ids["bank"], -200),
            (ids["cash"], 200),
        ]
        assert [(p.wallet_id, p.savings_bucket_id, p.amount) for p in contribution.postings] == [
            (ids["bank"], None, -150),
            (None, ids["holiday"], 150),
        ]
        assert [(p.wallet_id, p.savings_bucket_id, p.amount) for p in withdrawal.postings] == [
            (None, ids["holiday"], -50),
            (ids["cash"], None, 50),
        ]


def test_two_sided_movements_sum_to_zero() -> None:
    with make_session() as session:
        ids = seed(session)
        txns = TransactionService(session)
        txns.create_transfer(
            {"from_wallet_id": ids["cash"], "to_wallet_id": ids["bank"], "amount": 75, "occurred_at": JUNE}
        )
        txns.create_savings_contribution(
            {"wallet_id": ids["cash"], "bucket_id": ids["holiday"], "amount": 40, "occurred_at": JUNE}
        )
        txns.create_savings_withdrawal(
            {"wallet_id": ids["cash"], "bucket_id": ids["holiday"], "amount": 10, "occurred_at": JUNE}
        )

        for event in txns.list():
            assert len(event.postings) == 2
            assert sum(p.amount for p in event.postings) == 0


def test_generic_create_dispatches_on_type() -> None:
    with make_session() as session:
        ids = seed(session)
        event = TransactionService(session).create(
            {"type": "income", "wallet_id": ids["cash"], "amount": 500, "occurred_at": JUNE}
        )
        assert event.type == TransactionType.income
        assert event.display_amount == 500

        model_event = TransactionService(session).create(
            ExpenseIn(wallet_id=ids["cash"], category_id=ids["food"], amount=20, occurred_at=JUNE)
        )
        assert model_event.category_name == "Food"


def test_aware_timestamps_are_stored_as_utc() -> None:
    with make_session() as session:
        ids = seed(session)
        jakarta = timezone(timedelta(hours=7))
        event = TransactionService(session).create_income(
            {
                "wallet_id": ids["cash"],
                "amount": 10,
                "occurred_at": datetime(2024, 7, 1, 3, 0, tzinfo=jakarta),
            }
        )
        assert event.occurred_at == datetime(2024, 6, 30, 20, 0)


@pytest.mark.parametrize("amount", [0, -5, 10.5, "100"])
def test_amount_must_be_a_positive_integer(amount) -> None:
    with make_session() as session:
        ids = seed(session)
        with pytest.raises(ValidationFailed) as excinfo:
            TransactionService(session).create_income(
                {"wallet_id": ids["cash"], "amount": amount, "occurred_at": JUNE}
            )
        assert excinfo.value.issues[0]["field"] == "amount"
        assert event_count(session) == 0


def test_transfer_wallets_must_differ() -> None:
    with make_session() as session:
        ids = seed(session)
        with pytest.raises(ValidationFailed, match="From and to wallets must be different"):
            TransactionService(session).create_transfer(
                {"from_wallet_id": ids["cash"], "to_wallet_id": ids["cash"], "amount": 10, "occurred_at": JUNE}
            )
        assert event_count(session) == 0


def test_archived_or_missing_references_are_not_found() -> None:
    with make_session() as session:
        ids = seed(session)
        txns = TransactionService(session)
        WalletService(session).archive(ids["bank"])

        with pytest.raises(NotFound, match="Wallet not found or archived"):
            txns.create_income({"wallet_id": ids["bank"], "amount": 10, "occurred_at": JUNE})
        with pytest.raises(NotFound, match="Destination wallet not found or archived"):
            txns.create_transfer(
                {"from_wallet_id": ids["cash"], "to_wallet_id": ids["bank"], "amount": 10, "occurred_at": JUNE}
            )
        with pytest.raises(NotFound, match="Category not found or archived"):
            txns.create_expense(
                {"wallet_id": ids["cash"], "category_id": 999, "amount": 10, "occurred_at": JUNE}
            )

        SavingsBucketService(session).delete(ids["holiday"])
        with pytest.raises(NotFound, match="Savings bucket not found or archived"):
            txns.create_savings_contribution(
                {"wallet_id": ids["cash"], "bucket_id": ids["holiday"], "amount": 10, "occurred_at": JUNE}
            )
        assert event_count(session) == 0
        assert posting_count(session) == 0


def test_expense_requires_an_expense_category() -> None:
    with make_session() as session:
        ids = seed(session)
        with pytest.raises(ValidationFailed, match="Category type mismatch"):
            TransactionService(session).create_expense(
                {"wallet_id": ids["cash"], "category_id": ids["salary"], "amount": 10, "occurred_at": JUNE}
            )


def test_unknown_fields_are_rejected() -> None:
    with make_session() as session:
        ids = seed(session)
        with pytest.raises(ValidationFailed):
            TransactionService(session).create_income(
                {"wallet_id": ids["cash"], "amount": 10, "occurred_at": JUNE, "category_id": ids["food"]}
            )


def test_update_replaces_postings() -> None:
    with make_session() as session:
        ids = seed(session)
        txns = TransactionService(session)
        event = txns.create_expense(
            {"wallet_id": ids["cash"], "category_id": ids["food"], "amount": 100, "occurred_at": JUNE}
        )

        updated = txns.update_expense(
            event.id,
            {"wallet_id": ids["bank"], "category_id": ids["food"], "amount": 250, "occurred_at": JUNE, "note": "Dinner"},
        )

        assert [(p.wallet_id, p.amount) for p in updated.postings] == [(ids["bank"], -250)]
        assert updated.note == "Dinner"
        assert posting_count(session) == 1


def test_update_checks_type_lifecycle_and_existence() -> None:
    with make_session() as session:
        ids = seed(session)
        txns = TransactionService(session)
        event = txns.create_income({"wallet_id": ids["cash"], "amount": 100, "occurred_at": JUNE})

        with pytest.raises(ValidationFailed):
            txns.update_expense(
                event.id,
                {"wallet_id": ids["cash"], "category_id": ids["food"], "amount": 10, "occurred_at": JUNE},
            )
        with pytest.raises(NotFound):
            txns.update_income(999, {"wallet_id": ids["cash"], "amount": 10, "occurred_at": JUNE})

        txns.soft_delete(event.id)
        with pytest.raises(Conflict, match="Cannot update a deleted transaction"):
            txns.update_income(event.id, {"wallet_id": ids["cash"], "amount": 10, "occurred_at": JUNE})

        stored = txns.get(event.id, include_deleted=True)
        assert [p.amount for p in stored.postings] == [100]


def test_display_fields_describe_each_shape() -> None:
    with make_session() as session:
        ids = seed(session)
        txns = TransactionService(session)
        transfer = txns.create_transfer(
            {"from_wallet_id": ids["cash"], "to_wallet_id": ids["bank"], "amount": 90, "occurred_at": JUNE}
        )
        contribution = txns.create_savings_contribution(
            {"wallet_id": ids["bank"], "bucket_id": ids["holiday"], "amount": 40, "occurred_at": JUNE}
        )
        withdrawal = txns.create_savings_withdrawal(
            {"wallet_id": ids["bank"], "bucket_id": ids["holiday"], "amount": 15, "occurred_at": JUNE}
        )
        expense = txns.create_expense(
            {"wallet_id": ids["cash"], "category_id": ids["food"], "amount": 12, "occurred_at": JUNE}
        )

        assert transfer.display_account == "Cash → Bank"
        assert transfer.display_amount == 90
        assert contribution.display_account == "To: Holiday"
        assert withdrawal.display_account == "From: Holiday"
        assert expense.display_account == "Cash"
        assert expense.display_amount == 12
        assert [p.account_name for p in contribution.postings] == ["Bank", "Holiday"]


def test_list_filters_and_orders_newest_first() -> None:
    with make_session() as session:
        ids = seed(session)
        txns = TransactionService(session)
        first = txns.create_income({"wallet_id": ids["cash"], "amount": 1, "occurred_at": JUNE})
        second = txns.create_income(
            {"wallet_id": ids["bank"], "amount": 2, "occurred_at": JUNE + timedelta(days=1)}
        )
        third = txns.create_expense(
            {"wallet_id": ids["cash"], "category_id": ids["food"], "amount": 3, "occurred_at": JUNE + timedelta(days=2)}
        )
        txns.soft_delete(first.id)

        assert [e.id for e in txns.list()] == [third.id, second.id]
        assert [e.id for e in txns.list({"include_deleted": True})] == [third.id, second.id, first.id]
        assert [e.id for e in txns.list({"wallet_id": ids["cash"], "include_deleted": True})] == [
            third.id,
            first.id,
        ]
        assert [e.id for e in txns.list({"type": "expense"})] == [third.id]
        assert [e.id for e in txns.list({"category_id": ids["food"]})] == [third.id]
        assert [e.id for e in txns.list({"start": JUNE + timedelta(days=1), "end": JUNE + timedelta(days=2)})] == [
            second.id
        ]
        assert [e.id for e in txns.list({"limit": 1, "offset": 1})] == [second.id]

        with pytest.raises(ValidationFailed):
            txns.list({"limit": 101})
