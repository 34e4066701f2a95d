from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base
from ledger import (
    AccountRef,
    BucketAccount,
    BucketTarget,
    BudgetTarget,
    CategoryTarget,
    EventState,
    WalletAccount,
)


class WalletKind(str, Enum):
    cash = "cash"
    bank = "bank"
    ewallet = "ewallet"
    other = "other"


class CategoryKind(str, Enum):
    expense = "expense"
    income = "income"


class TransactionType(str, Enum):
    expense = "expense"
    income = "income"
    transfer = "transfer"
    savings_contribution = "savings_contribution"
    savings_withdrawal = "savings_withdrawal"


def _enum(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        native_enum=False,
        values_callable=lambda members: [member.value for member in members],
    )


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Wallet(Base, TimestampMixin):
    __tablename__ = "wallets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    kind: Mapped[WalletKind] = mapped_column(
        _enum(WalletKind, "walletkind"), nullable=False, default=WalletKind.bank
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    postings: Mapped[list["Posting"]] = relationship(
        "Posting", back_populates="wallet"
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    kind: Mapped[CategoryKind] = mapped_column(
        _enum(CategoryKind, "categorykind"),
        nullable=False,
        default=CategoryKind.expense,
    )
    archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    events: Mapped[list["TransactionEvent"]] = relationship(
        "TransactionEvent", back_populates="category"
    )


class SavingsBucket(Base, TimestampMixin):
    __tablename__ = "savings_buckets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[Optional[str]] = mapped_column(Text)
    archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    postings: Mapped[list["Posting"]] = relationship(
        "Posting", back_populates="savings_bucket"
    )


class TransactionEvent(Base, TimestampMixin):
    __tablename__ = "transaction_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        _enum(TransactionType, "transactiontype"), nullable=False
    )
    note: Mapped[Optional[str]] = mapped_column(Text)
    payee: Mapped[Optional[str]] = mapped_column(Text)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(36))
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="events"
    )
    postings: Mapped[list["Posting"]] = relationship(
        "Posting",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="Posting.id",
    )

    __table_args__ = (
        UniqueConstraint(
            "idempotency_key", name="uq_transaction_events_idempotency_key"
        ),
        Index("ix_transaction_events_occurred_at", "occurred_at"),
        Index("ix_transaction_events_type_occurred_at", "type", "occurred_at"),
        Index("ix_transaction_events_category_id", "category_id"),
    )

    @property
    def state(self) -> EventState:
        return EventState.deleted if self.deleted_at is not None else EventState.active

    @property
    def category_name(self) -> Optional[str]:
        return self.category.name if self.category else None

    @property
    def display_amount(self) -> int:
        """Positive amount moved by the event, whatever its shape."""
        return max((abs(p.amount) for p in self.postings), default=0)

    @property
    def display_account(self) -> str:
        outflow = next((p for p in self.postings if p.amount < 0), None)
        inflow = next((p for p in self.postings if p.amount > 0), None)
        if self.type == TransactionType.transfer:
            source = outflow.account_name if outflow else None
            target = inflow.account_name if inflow else None
            return f"{source or 'Unknown'} → {target or 'Unknown'}"
        if self.type == TransactionType.savings_contribution:
            return f"To: {inflow.account_name if inflow else 'Unknown Bucket'}"
        if self.type == TransactionType.savings_withdrawal:
            return f"From: {outflow.account_name if outflow else 'Unknown Bucket'}"
        posting = outflow or inflow
        return posting.account_name if posting else "Unknown Wallet"


class Posting(Base):
    __tablename__ = "postings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[int] = mapped_column(
        ForeignKey("transaction_events.id", ondelete="CASCADE"), nullable=False
    )
    wallet_id: Mapped[Optional[int]] = mapped_column(ForeignKey("wallets.id"))
    savings_bucket_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("savings_buckets.id")
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    event: Mapped["TransactionEvent"] = relationship(
        "TransactionEvent", back_populates="postings"
    )
    wallet: Mapped[Optional["Wallet"]] = relationship(
        "Wallet", back_populates="postings"
    )
    savings_bucket: Mapped[Optional["SavingsBucket"]] = relationship(
        "SavingsBucket", back_populates="postings"
    )

    __table_args__ = (
        CheckConstraint(
            "(wallet_id IS NULL) <> (savings_bucket_id IS NULL)",
            name="ck_postings_single_account",
        ),
        Index("ix_postings_event_id", "event_id"),
        Index("ix_postings_wallet_id", "wallet_id"),
        Index("ix_postings_savings_bucket_id", "savings_bucket_id"),
    )

    @classmethod
    def for_account(cls, account: AccountRef, amount: int) -> "Posting":
        if isinstance(account, WalletAccount):
            return cls(wallet_id=account.wallet_id, amount=amount)
        return cls(savings_bucket_id=account.bucket_id, amount=amount)

    @property
    def account(self) -> AccountRef:
        if self.wallet_id is not None:
            return WalletAccount(self.wallet_id)
        return BucketAccount(self.savings_bucket_id)

    @property
    def account_name(self) -> Optional[str]:
        if self.wallet is not None:
            return self.wallet.name
        if self.savings_bucket is not None:
            return self.savings_bucket.name
        return None


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    month: Mapped[str] = mapped_column(String(10), nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    savings_bucket_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("savings_buckets.id")
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)

    category: Mapped[Optional["Category"]] = relationship("Category")
    savings_bucket: Mapped[Optional["SavingsBucket"]] = relationship("SavingsBucket")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_budgets_amount_positive"),
        CheckConstraint(
            "(category_id IS NULL) <> (savings_bucket_id IS NULL)",
            name="ck_budgets_single_target",
        ),
        UniqueConstraint("month", "category_id", name="uq_budgets_month_category"),
        UniqueConstraint(
            "month", "savings_bucket_id", name="uq_budgets_month_savings_bucket"
        ),
        Index("ix_budgets_month", "month"),
    )

    @property
    def target(self) -> BudgetTarget:
        if self.category_id is not None:
            return CategoryTarget(self.category_id)
        return BucketTarget(self.savings_bucket_id)

    @property
    def target_type(self) -> str:
        return self.target.kind

    @property
    def target_name(self) -> str:
        if self.category is not None:
            return self.category.name
        if self.savings_bucket is not None:
            return self.savings_bucket.name
        return ""
