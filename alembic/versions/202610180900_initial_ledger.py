"""initial ledger schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "wallets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False, unique=True),
        sa.Column(
            "kind",
            sa.Enum(
                "cash", "bank", "ewallet", "other", name="walletkind", native_enum=False
            ),
            nullable=False,
        ),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False, unique=True),
        sa.Column(
            "kind",
            sa.Enum("expense", "income", name="categorykind", native_enum=False),
            nullable=False,
        ),
        sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )

    op.create_table(
        "savings_buckets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=255), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "transaction_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("occurred_at", sa.DateTime(), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "expense",
                "income",
                "transfer",
                "savings_contribution",
                "savings_withdrawal",
                name="transactiontype",
                native_enum=False,
            ),
            nullable=False,
        ),
        sa.Column("note", sa.Text(), nullable=True),
        sa.Column("payee", sa.Text(), nullable=True),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True
        ),
        sa.Column("idempotency_key", sa.String(length=36), nullable=True),
        sa.Column("deleted_at", sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint(
            "idempotency_key", name="uq_transaction_events_idempotency_key"
        ),
    )
    op.create_index(
        "ix_transaction_events_occurred_at", "transaction_events", ["occurred_at"]
    )
    op.create_index(
        "ix_transaction_events_type_occurred_at",
        "transaction_events",
        ["type", "occurred_at"],
    )
    op.create_index(
        "ix_transaction_events_category_id", "transaction_events", ["category_id"]
    )

    op.create_table(
        "postings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "event_id",
            sa.Integer(),
            sa.ForeignKey("transaction_events.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("wallet_id", sa.Integer(), sa.ForeignKey("wallets.id"), nullable=True),
        sa.Column(
            "savings_bucket_id",
            sa.Integer(),
            sa.ForeignKey("savings_buckets.id"),
            nullable=True,
        ),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "(wallet_id IS NULL) <> (savings_bucket_id IS NULL)",
            name="ck_postings_single_account",
        ),
    )
    op.create_index("ix_postings_event_id", "postings", ["event_id"])
    op.create_index("ix_postings_wallet_id", "postings", ["wallet_id"])
    op.create_index("ix_postings_savings_bucket_id", "postings", ["savings_bucket_id"])

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("month", sa.String(length=10), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=True
        ),
        sa.Column(
            "savings_bucket_id",
            sa.Integer(),
            sa.ForeignKey("savings_buckets.id"),
            nullable=True,
        ),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_budgets_amount_positive"),
        sa.CheckConstraint(
            "(category_id IS NULL) <> (savings_bucket_id IS NULL)",
            name="ck_budgets_single_target",
        ),
        sa.UniqueConstraint("month", "category_id", name="uq_budgets_month_category"),
        sa.UniqueConstraint(
            "month", "savings_bucket_id", name="uq_budgets_month_savings_bucket"
        ),
    )
    op.create_index("ix_budgets_month", "budgets", ["month"])


def downgrade() -> None:
    op.drop_index("ix_budgets_month", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_postings_savings_bucket_id", table_name="postings")
    op.drop_index("ix_postings_wallet_id", table_name="postings")
    op.drop_index("ix_postings_event_id", table_name="postings")
    op.drop_table("postings")
    op.drop_index("ix_transaction_events_category_id", table_name="transaction_events")
    op.drop_index(
        "ix_transaction_events_type_occurred_at", table_name="transaction_events"
    )
    op.drop_index("ix_transaction_events_occurred_at", table_name="transaction_events")
    op.drop_table("transaction_events")
    op.drop_table("savings_buckets")
    op.drop_table("categories")
    op.drop_table("wallets")
