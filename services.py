from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import case, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, selectinload

from config import get_settings
from database import unit_of_work
from errors import Conflict, NotFound, ValidationFailed
from ledger import (
    BucketTarget,
    BudgetTarget,
    CategoryTarget,
    EventState,
    build_legs,
    next_state,
)
from models import (
    Budget,
    Category,
    CategoryKind,
    Posting,
    SavingsBucket,
    TransactionEvent,
    TransactionType,
    Wallet,
)
from periods import month_label, month_period, naive_utc, parse_month_key
from schemas import (
    TRANSACTION_SHAPES,
    BudgetCopyIn,
    BudgetIn,
    BudgetUpdateIn,
    BulkDeleteIn,
    CategoryIn,
    CategoryUpdateIn,
    ExpenseIn,
    IncomeIn,
    SavingsBucketIn,
    SavingsBucketUpdateIn,
    SavingsContributionIn,
    SavingsWithdrawalIn,
    TransactionIn,
    TransactionQuery,
    TransferIn,
    TrendQuery,
    WalletIn,
    WalletUpdateIn,
    parse_input,
)

logger = logging.getLogger(__name__)

DUPLICATE_IDEMPOTENCY_KEY = "Transaction with this idempotency key already exists"


def _now() -> datetime:
    return datetime.utcnow()


def _violates(exc: IntegrityError, *needles: str) -> bool:
    message = str(exc.orig).lower()
    return any(needle in message for needle in needles)


def _require_month(value: str, field_name: str = "month") -> str:
    try:
        parse_month_key(value)
    except (TypeError, ValueError) as exc:
        message = "Month must be in YYYY-MM-01 format with valid month (01-12)"
        raise ValidationFailed(
            message, issues=[{"field": field_name, "message": message}]
        ) from exc
    return value


# --- Entity store -----------------------------------------------------------


class _EntityService:
    """Shared lookups for the named, archivable reference entities."""

    model: Any = None
    label = ""
    event_prefix = ""
    update_schema: Any = None

    def __init__(self, session: Session) -> None:
        self.session = session

    def _is_visible(self, entity) -> bool:
        return True

    def _base_query(self):
        return select(self.model)

    def list_all(self, include_archived: bool = False) -> list:
        stmt = self._base_query().order_by(self.model.name)
        if not include_archived:
            stmt = stmt.where(self.model.archived.is_(False))
        return list(self.session.scalars(stmt).all())

    def get(self, entity_id: int):
        entity = self.session.get(self.model, entity_id)
        if entity is None or not self._is_visible(entity):
            raise NotFound(f"{self.label} not found")
        return entity

    def require_active(self, entity_id: int, label: Optional[str] = None):
        entity = self.session.get(self.model, entity_id)
        if entity is None or entity.archived or not self._is_visible(entity):
            raise NotFound(f"{label or self.label} not found or archived")
        return entity

    def _ensure_name_free(self, name: str, exclude_id: Optional[int] = None) -> None:
        stmt = select(self.model.id).where(self.model.name == name)
        if exclude_id is not None:
            stmt = stmt.where(self.model.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise Conflict(f"{self.label} with this name already exists")

    def _flush_named(self) -> None:
        try:
            self.session.flush()
        except IntegrityError as exc:
            if _violates(exc, ".name", "_name_key", "unique"):
                raise Conflict(f"{self.label} with this name already exists") from exc
            raise

    def _insert(self, entity):
        with unit_of_work(self.session):
            self._ensure_name_free(entity.name)
            self.session.add(entity)
            self._flush_named()
        logger.info(f"{self.event_prefix}_created: id={entity.id}")
        return entity

    def update(self, entity_id: int, data):
        data = parse_input(self.update_schema, data)
        changes = {
            key: value
            for key, value in data.model_dump(exclude_unset=True).items()
            if value is not None or key == "description"
        }
        if not changes:
            raise ValidationFailed("No fields to update")
        with unit_of_work(self.session):
            entity = self.get(entity_id)
            if "name" in changes:
                changes["name"] = changes["name"].strip()
                self._ensure_name_free(changes["name"], exclude_id=entity.id)
            for key, value in changes.items():
                setattr(entity, key, value)
            self._flush_named()
        logger.info(
            f"{self.event_prefix}_updated: id={entity_id} fields={','.join(sorted(changes))}"
        )
        return entity

    def _set_archived(self, entity_id: int, archived: bool):
        with unit_of_work(self.session):
            entity = self.get(entity_id)
            if entity.archived == archived:
                state = "already archived" if archived else "not archived"
                raise Conflict(f"{self.label} is {state}")
            entity.archived = archived
        action = "archived" if archived else "restored"
        logger.info(f"{self.event_prefix}_{action}: id={entity_id}")
        return entity

    def archive(self, entity_id: int):
        return self._set_archived(entity_id, True)

    def restore(self, entity_id: int):
        return self._set_archived(entity_id, False)


class WalletService(_EntityService):
    model = Wallet
    label = "Wallet"
    event_prefix = "wallet"
    update_schema = WalletUpdateIn

    def create(self, data: WalletIn) -> Wallet:
        data = parse_input(WalletIn, data)
        currency = (data.currency or get_settings().default_currency).upper()
        wallet = Wallet(name=data.name.strip(), kind=data.kind, currency=currency)
        return self._insert(wallet)

    def delete(self, wallet_id: int) -> None:
        with unit_of_work(self.session):
            wallet = self.get(wallet_id)
            in_use = self.session.scalar(
                select(Posting.id).where(Posting.wallet_id == wallet.id).limit(1)
            )
            if in_use is not None:
                raise Conflict("Cannot delete wallet with existing transactions")
            self.session.delete(wallet)
        logger.info(f"wallet_deleted: id={wallet_id}")


@dataclass
class CategoryStats:
    transaction_count: int
    total_amount: int


class CategoryService(_EntityService):
    model = Category
    label = "Category"
    event_prefix = "category"
    update_schema = CategoryUpdateIn

    def list_all(
        self, include_archived: bool = False, kind: Optional[CategoryKind] = None
    ) -> list[Category]:
        stmt = select(Category).order_by(Category.kind, Category.name)
        if not include_archived:
            stmt = stmt.where(Category.archived.is_(False))
        if kind is not None:
            stmt = stmt.where(Category.kind == kind)
        return list(self.session.scalars(stmt).all())

    def create(self, data: CategoryIn) -> Category:
        data = parse_input(CategoryIn, data)
        return self._insert(Category(name=data.name.strip(), kind=data.kind))

    def delete(self, category_id: int) -> None:
        with unit_of_work(self.session):
            category = self.get(category_id)
            used_by_events = self.session.scalar(
                select(TransactionEvent.id)
                .where(TransactionEvent.category_id == category.id)
                .limit(1)
            )
            used_by_budgets = self.session.scalar(
                select(Budget.id).where(Budget.category_id == category.id).limit(1)
            )
            if used_by_events is not None or used_by_budgets is not None:
                raise Conflict("Cannot delete category that is in use")
            self.session.delete(category)
        logger.info(f"category_deleted: id={category_id}")

    def stats(self, category_id: int) -> CategoryStats:
        """Live event count and absolute total for one category, archived or not."""
        category = self.get(category_id)
        count, total = self.session.execute(
            select(
                func.count(func.distinct(TransactionEvent.id)),
                func.coalesce(func.sum(func.abs(Posting.amount)), 0),
            )
            .select_from(TransactionEvent)
            .join(Posting, Posting.event_id == TransactionEvent.id)
            .where(
                TransactionEvent.category_id == category.id,
                TransactionEvent.deleted_at.is_(None),
            )
        ).one()
        return CategoryStats(transaction_count=int(count), total_amount=int(total))


class SavingsBucketService(_EntityService):
    model = SavingsBucket
    label = "Savings bucket"
    event_prefix = "savings_bucket"
    update_schema = SavingsBucketUpdateIn

    def _is_visible(self, entity: SavingsBucket) -> bool:
        return entity.deleted_at is None

    def _base_query(self):
        return select(SavingsBucket).where(SavingsBucket.deleted_at.is_(None))

    def create(self, data: SavingsBucketIn) -> SavingsBucket:
        data = parse_input(SavingsBucketIn, data)
        bucket = SavingsBucket(name=data.name.strip(), description=data.description)
        return self._insert(bucket)

    def delete(self, bucket_id: int) -> None:
        with unit_of_work(self.session):
            bucket = self.session.get(SavingsBucket, bucket_id)
            if bucket is None:
                raise NotFound("Savings bucket not found")
            if bucket.deleted_at is not None:
                raise Conflict("Savings bucket is already deleted")
            bucket.deleted_at = _now()
        logger.info(f"savings_bucket_deleted: id={bucket_id}")


# --- Ledger -----------------------------------------------------------------


class IdempotencyGuard:
    def __init__(self, session: Session) -> None:
        self.session = session

    def ensure_unused(self, key: Optional[str]) -> None:
        """Fail if any event, soft-deleted ones included, already carries ``key``."""
        if not key:
            return
        existing = self.session.scalar(
            select(TransactionEvent.id).where(TransactionEvent.idempotency_key == key)
        )
        if existing is not None:
            raise Conflict(
                DUPLICATE_IDEMPOTENCY_KEY,
                issues=[{"field": "idempotency_key", "message": DUPLICATE_IDEMPOTENCY_KEY}],
            )

    def flush(self, key: Optional[str]) -> None:
        # A concurrent writer can still win between the check and the insert;
        # the unique constraint settles it.
        try:
            self.session.flush()
        except IntegrityError as exc:
            if key and _violates(exc, "idempotency_key"):
                raise Conflict(DUPLICATE_IDEMPOTENCY_KEY) from exc
            raise


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.idempotency = IdempotencyGuard(session)

    def _check_references(self, data) -> Optional[Category]:
        wallets = WalletService(self.session)
        if isinstance(data, TransferIn):
            wallets.require_active(data.from_wallet_id, "Source wallet")
            wallets.require_active(data.to_wallet_id, "Destination wallet")
            return None

        wallets.require_active(data.wallet_id)
        if isinstance(data, (SavingsContributionIn, SavingsWithdrawalIn)):
            SavingsBucketService(self.session).require_active(data.bucket_id)
            return None
        if isinstance(data, ExpenseIn):
            category = CategoryService(self.session).require_active(data.category_id)
            if category.kind != CategoryKind.expense:
                raise ValidationFailed(
                    "Category type mismatch",
                    issues=[
                        {"field": "category_id", "message": "Category type mismatch"}
                    ],
                )
            return category
        return None

    def _postings(self, data) -> list[Posting]:
        legs = build_legs(
            data.type,
            data.amount,
            source=data.source,
            destination=data.destination,
        )
        return [Posting.for_account(leg.account, leg.amount) for leg in legs]

    def _create(self, data) -> TransactionEvent:
        with unit_of_work(self.session):
            category = self._check_references(data)
            self.idempotency.ensure_unused(data.idempotency_key)
            event = TransactionEvent(
                occurred_at=data.occurred_at,
                type=TransactionType(data.type),
                note=data.note,
                payee=getattr(data, "payee", None),
                category_id=category.id if category else None,
                idempotency_key=data.idempotency_key,
            )
            event.postings = self._postings(data)
            self.session.add(event)
            self.idempotency.flush(data.idempotency_key)
        logger.info(f"transaction_created: id={event.id} type={data.type}")
        return self.get(event.id, include_deleted=True)

    def create(self, data: TransactionIn) -> TransactionEvent:
        if not isinstance(data, TRANSACTION_SHAPES):
            data = parse_input(TransactionIn, data)
        return self._create(data)

    def create_expense(self, data: ExpenseIn) -> TransactionEvent:
        return self._create(parse_input(ExpenseIn, data))

    def create_income(self, data: IncomeIn) -> TransactionEvent:
        return self._create(parse_input(IncomeIn, data))

    def create_transfer(self, data: TransferIn) -> TransactionEvent:
        return self._create(parse_input(TransferIn, data))

    def create_savings_contribution(
        self, data: SavingsContributionIn
    ) -> TransactionEvent:
        return self._create(parse_input(SavingsContributionIn, data))

    def create_savings_withdrawal(self, data: SavingsWithdrawalIn) -> TransactionEvent:
        return self._create(parse_input(SavingsWithdrawalIn, data))

    def _update(self, event_id: int, shape, data) -> TransactionEvent:
        data = parse_input(shape, data)
        with unit_of_work(self.session):
            event = self._require(event_id)
            if event.type != TransactionType(data.type):
                raise ValidationFailed(
                    f"Transaction is a {event.type.value}, not a {data.type}"
                )
            if event.state == EventState.deleted:
                raise Conflict("Cannot update a deleted transaction")
            category = self._check_references(data)
            event.occurred_at = data.occurred_at
            event.note = data.note
            event.payee = getattr(data, "payee", None)
            event.category_id = category.id if category else None
            event.postings = self._postings(data)
            event.updated_at = _now()
        logger.info(f"transaction_updated: id={event_id} type={data.type}")
        return self.get(event_id, include_deleted=True)

    def update_expense(self, event_id: int, data: ExpenseIn) -> TransactionEvent:
        return self._update(event_id, ExpenseIn, data)

    def update_income(self, event_id: int, data: IncomeIn) -> TransactionEvent:
        return self._update(event_id, IncomeIn, data)

    def update_transfer(self, event_id: int, data: TransferIn) -> TransactionEvent:
        return self._update(event_id, TransferIn, data)

    def update_savings_contribution(
        self, event_id: int, data: SavingsContributionIn
    ) -> TransactionEvent:
        return self._update(event_id, SavingsContributionIn, data)

    def update_savings_withdrawal(
        self, event_id: int, data: SavingsWithdrawalIn
    ) -> TransactionEvent:
        return self._update(event_id, SavingsWithdrawalIn, data)

    def _require(self, event_id: int) -> TransactionEvent:
        event = self.session.get(TransactionEvent, event_id)
        if event is None:
            raise NotFound("Transaction not found")
        return event

    def _with_details(self, stmt):
        return stmt.options(
            joinedload(TransactionEvent.category),
            selectinload(TransactionEvent.postings).options(
                joinedload(Posting.wallet), joinedload(Posting.savings_bucket)
            ),
        )

    def get(self, event_id: int, *, include_deleted: bool = False) -> TransactionEvent:
        stmt = self._with_details(select(TransactionEvent)).where(
            TransactionEvent.id == event_id
        )
        if not include_deleted:
            stmt = stmt.where(TransactionEvent.deleted_at.is_(None))
        event = self.session.scalar(stmt)
        if event is None:
            raise NotFound("Transaction not found")
        return event

    def list(self, query: Optional[TransactionQuery] = None) -> list[TransactionEvent]:
        query = parse_input(TransactionQuery, query if query is not None else {})
        stmt = self._with_details(select(TransactionEvent))
        if not query.include_deleted:
            stmt = stmt.where(TransactionEvent.deleted_at.is_(None))
        if query.start is not None:
            stmt = stmt.where(TransactionEvent.occurred_at >= query.start)
        if query.end is not None:
            stmt = stmt.where(TransactionEvent.occurred_at < query.end)
        if query.type is not None:
            stmt = stmt.where(TransactionEvent.type == query.type)
        if query.category_id is not None:
            stmt = stmt.where(TransactionEvent.category_id == query.category_id)
        if query.wallet_id is not None:
            stmt = stmt.where(
                TransactionEvent.postings.any(Posting.wallet_id == query.wallet_id)
            )
        stmt = (
            stmt.order_by(TransactionEvent.occurred_at.desc(), TransactionEvent.id.desc())
            .limit(query.limit)
            .offset(query.offset)
        )
        return list(self.session.scalars(stmt).unique().all())

    def soft_delete(self, event_id: int) -> TransactionEvent:
        with unit_of_work(self.session):
            event = self._require(event_id)
            next_state(event.state, "soft_delete")
            event.deleted_at = _now()
        logger.info(f"transaction_soft_deleted: id={event_id}")
        return event

    def restore(self, event_id: int) -> TransactionEvent:
        with unit_of_work(self.session):
            event = self._require(event_id)
            next_state(event.state, "restore")
            event.deleted_at = None
        logger.info(f"transaction_restored: id={event_id}")
        return self.get(event_id)

    def permanent_delete(self, event_id: int) -> None:
        with unit_of_work(self.session):
            event = self._require(event_id)
            self.session.delete(event)
        logger.info(f"transaction_purged: id={event_id}")

    def bulk_delete(self, ids: Sequence[int]) -> BulkDeleteResult:
        return BulkDeleteService(self.session).transactions(ids)


# --- Bulk operations --------------------------------------------------------


@dataclass
class BulkDeleteResult:
    deleted_count: int
    failed_ids: list[int] = field(default_factory=list)


class BulkDeleteService:
    """Best-effort hard deletes: missing ids are reported, the rest still commit."""

    def __init__(self, session: Session, limit: Optional[int] = None) -> None:
        self.session = session
        self.limit = limit or get_settings().bulk_delete_limit

    def _normalize(self, ids: Sequence[int]) -> list[int]:
        data = parse_input(BulkDeleteIn, {"ids": ids})
        unique_ids = list(dict.fromkeys(data.ids))
        if len(unique_ids) > self.limit:
            message = f"Cannot delete more than {self.limit} items at once"
            raise ValidationFailed(message, issues=[{"field": "ids", "message": message}])
        return unique_ids

    def _run(self, model, ids: Sequence[int], dependents=()) -> BulkDeleteResult:
        requested = self._normalize(ids)
        with unit_of_work(self.session):
            found = set(
                self.session.scalars(select(model.id).where(model.id.in_(requested)))
            )
            doomed = sorted(found)
            if found:
                for column in dependents:
                    self.session.execute(delete(column.class_).where(column.in_(doomed)))
                self.session.execute(delete(model).where(model.id.in_(doomed)))
        failed = [item for item in requested if item not in found]
        logger.info(
            f"bulk_delete: table={model.__tablename__} deleted={len(found)} failed={len(failed)}"
        )
        return BulkDeleteResult(deleted_count=len(found), failed_ids=failed)

    def transactions(self, ids: Sequence[int]) -> BulkDeleteResult:
        return self._run(TransactionEvent, ids, dependents=(Posting.event_id,))

    def budgets(self, ids: Sequence[int]) -> BulkDeleteResult:
        return self._run(Budget, ids)


# --- Balances ---------------------------------------------------------------


@dataclass
class AccountStats:
    balance: int
    transaction_count: int


class BalanceService:
    """Balances are always recomputed from postings of non-deleted events."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def _live_postings(self, *columns):
        return (
            select(*columns)
            .select_from(Posting)
            .join(TransactionEvent, TransactionEvent.id == Posting.event_id)
            .where(TransactionEvent.deleted_at.is_(None))
        )

    def _stats(self, account_column, account_id: int) -> AccountStats:
        balance = self.session.execute(
            self._live_postings(func.coalesce(func.sum(Posting.amount), 0)).where(
                account_column == account_id
            )
        ).scalar_one()
        count = self.session.execute(
            self._live_postings(func.count(func.distinct(TransactionEvent.id))).where(
                account_column == account_id
            )
        ).scalar_one()
        return AccountStats(balance=int(balance or 0), transaction_count=int(count or 0))

    def wallet_stats(self, wallet_id: int) -> AccountStats:
        WalletService(self.session).get(wallet_id)
        return self._stats(Posting.wallet_id, wallet_id)

    def bucket_stats(self, bucket_id: int) -> AccountStats:
        SavingsBucketService(self.session).get(bucket_id)
        return self._stats(Posting.savings_bucket_id, bucket_id)

    def wallet_balance(self, wallet_id: int) -> int:
        return self.wallet_stats(wallet_id).balance

    def bucket_balance(self, bucket_id: int) -> int:
        return self.bucket_stats(bucket_id).balance

    def wallet_balances(self) -> dict[int, int]:
        live = (
            self._live_postings(
                Posting.wallet_id.label("wallet_id"),
                func.sum(Posting.amount).label("balance"),
            )
            .where(Posting.wallet_id.is_not(None))
            .group_by(Posting.wallet_id)
            .subquery()
        )
        rows = self.session.execute(
            select(Wallet.id, func.coalesce(live.c.balance, 0)).outerjoin(
                live, live.c.wallet_id == Wallet.id
            )
        ).all()
        return {wallet_id: int(balance) for wallet_id, balance in rows}


# --- Budgets ----------------------------------------------------------------


@dataclass
class BudgetSummaryItem:
    budget_id: int
    category_id: Optional[int]
    savings_bucket_id: Optional[int]
    target_name: str
    target_type: str
    budget_amount: int
    spent_amount: int
    remaining: int
    percent_used: float


@dataclass
class BudgetSummary:
    month: str
    total_budget: int
    total_spent: int
    remaining: int
    items: list[BudgetSummaryItem] = field(default_factory=list)


@dataclass
class SkippedBudget:
    category_id: Optional[int]
    savings_bucket_id: Optional[int]
    target_name: str


@dataclass
class CopyBudgetsResult:
    created: list[Budget] = field(default_factory=list)
    skipped: list[SkippedBudget] = field(default_factory=list)


@dataclass
class BudgetMonth:
    value: str
    label: str
    budget_count: int


def _percent(part: int, whole: int) -> float:
    if not whole:
        return 0.0
    return round(part / whole * 100, 2)


def _target_columns(target: BudgetTarget) -> dict[str, Optional[int]]:
    if isinstance(target, CategoryTarget):
        return {"category_id": target.category_id, "savings_bucket_id": None}
    return {"category_id": None, "savings_bucket_id": target.bucket_id}


def _duplicate_budget_message(target: BudgetTarget) -> str:
    if isinstance(target, CategoryTarget):
        return "Budget already exists for this month and category"
    return "Budget already exists for this month and savings bucket"


class BudgetService:
    def __init__(self, session: Session) -> None:
        self.session = session

    @staticmethod
    def _resolve_target(
        category_id: Optional[int], savings_bucket_id: Optional[int]
    ) -> BudgetTarget:
        if category_id is None and savings_bucket_id is None:
            raise ValidationFailed(
                "Must specify either category_id or savings_bucket_id",
                issues=[
                    {
                        "field": "category_id",
                        "message": "Must specify either category_id or savings_bucket_id",
                    }
                ],
            )
        if category_id is not None and savings_bucket_id is not None:
            raise ValidationFailed(
                "Cannot specify both category_id and savings_bucket_id",
                issues=[
                    {
                        "field": "savings_bucket_id",
                        "message": "Cannot specify both category_id and savings_bucket_id",
                    }
                ],
            )
        if category_id is not None:
            return CategoryTarget(category_id)
        return BucketTarget(savings_bucket_id)

    def _require_target(self, target: BudgetTarget) -> None:
        if isinstance(target, CategoryTarget):
            category = CategoryService(self.session).require_active(target.category_id)
            if category.kind != CategoryKind.expense:
                raise NotFound("Expense category not found or archived")
            return
        SavingsBucketService(self.session).require_active(target.bucket_id)

    def _existing(self, month: str, target: BudgetTarget) -> Optional[Budget]:
        columns = _target_columns(target)
        stmt = select(Budget).where(Budget.month == month)
        if columns["category_id"] is not None:
            stmt = stmt.where(Budget.category_id == columns["category_id"])
        else:
            stmt = stmt.where(Budget.savings_bucket_id == columns["savings_bucket_id"])
        return self.session.scalar(stmt)

    def _flush(self, message: str) -> None:
        try:
            self.session.flush()
        except IntegrityError as exc:
            if _violates(exc, "budgets.month", "uq_budgets_month"):
                raise Conflict(message) from exc
            raise

    def _with_targets(self, stmt):
        return stmt.options(
            joinedload(Budget.category), joinedload(Budget.savings_bucket)
        )

    def list(self, month: Optional[str] = None) -> list[Budget]:
        stmt = (
            self._with_targets(select(Budget))
            .outerjoin(Category, Category.id == Budget.category_id)
            .outerjoin(SavingsBucket, SavingsBucket.id == Budget.savings_bucket_id)
        )
        order = [
            Budget.category_id.is_(None),
            func.coalesce(Category.name, SavingsBucket.name),
        ]
        if month is not None:
            stmt = stmt.where(Budget.month == _require_month(month))
        else:
            order.insert(0, Budget.month.desc())
        return list(self.session.scalars(stmt.order_by(*order)).unique().all())

    def get(self, budget_id: int) -> Budget:
        budget = self.session.scalar(
            self._with_targets(select(Budget)).where(Budget.id == budget_id)
        )
        if budget is None:
            raise NotFound("Budget not found")
        return budget

    def create(self, data: BudgetIn) -> Budget:
        data = parse_input(BudgetIn, data)
        target = self._resolve_target(data.category_id, data.savings_bucket_id)
        with unit_of_work(self.session):
            self._require_target(target)
            if self._existing(data.month, target) is not None:
                raise Conflict(_duplicate_budget_message(target))
            budget = Budget(
                month=data.month, amount=data.amount, note=data.note, **_target_columns(target)
            )
            self.session.add(budget)
            self._flush(_duplicate_budget_message(target))
        logger.info(
            f"budget_created: id={budget.id} month={data.month} target={target.kind}"
        )
        return self.get(budget.id)

    def update(self, budget_id: int, data: BudgetUpdateIn) -> Budget:
        data = parse_input(BudgetUpdateIn, data)
        with unit_of_work(self.session):
            budget = self.get(budget_id)
            budget.amount = data.amount
            if "note" in data.model_fields_set:
                budget.note = data.note
        logger.info(f"budget_updated: id={budget_id}")
        return budget

    def delete(self, budget_id: int) -> None:
        with unit_of_work(self.session):
            self.session.delete(self.get(budget_id))
        logger.info(f"budget_deleted: id={budget_id}")

    def bulk_delete(self, ids: Sequence[int]) -> BulkDeleteResult:
        return BulkDeleteService(self.session).budgets(ids)

    def delete_month(self, month: str) -> int:
        month = _require_month(month)
        with unit_of_work(self.session):
            result = self.session.execute(delete(Budget).where(Budget.month == month))
        deleted = int(result.rowcount or 0)
        logger.info(f"budget_month_deleted: month={month} deleted={deleted}")
        return deleted

    def months(self) -> list[BudgetMonth]:
        rows = self.session.execute(
            select(Budget.month, func.count(Budget.id))
            .group_by(Budget.month)
            .order_by(Budget.month.desc())
        ).all()
        return [
            BudgetMonth(value=month, label=month_label(month), budget_count=int(count))
            for month, count in rows
        ]

    def _spent_by_category(self, start: datetime, end: datetime) -> dict[int, int]:
        rows = self.session.execute(
            select(
                TransactionEvent.category_id,
                func.coalesce(func.sum(func.abs(Posting.amount)), 0),
            )
            .join(Posting, Posting.event_id == TransactionEvent.id)
            .where(
                TransactionEvent.type == TransactionType.expense,
                TransactionEvent.deleted_at.is_(None),
                TransactionEvent.category_id.is_not(None),
                TransactionEvent.occurred_at >= start,
                TransactionEvent.occurred_at < end,
            )
            .group_by(TransactionEvent.category_id)
        ).all()
        return {category_id: int(total) for category_id, total in rows}

    def _contributed_by_bucket(self, start: datetime, end: datetime) -> dict[int, int]:
        # Withdrawals never reduce budget progress.
        rows = self.session.execute(
            select(
                Posting.savings_bucket_id,
                func.coalesce(func.sum(Posting.amount), 0),
            )
            .join(TransactionEvent, TransactionEvent.id == Posting.event_id)
            .where(
                TransactionEvent.type == TransactionType.savings_contribution,
                TransactionEvent.deleted_at.is_(None),
                Posting.savings_bucket_id.is_not(None),
                TransactionEvent.occurred_at >= start,
                TransactionEvent.occurred_at < end,
            )
            .group_by(Posting.savings_bucket_id)
        ).all()
        return {bucket_id: int(total) for bucket_id, total in rows}

    def summary(self, month: str) -> BudgetSummary:
        period = month_period(_require_month(month))
        budgets = self.list(period.slug)
        spent_by_category = self._spent_by_category(period.start, period.end)
        contributed_by_bucket = self._contributed_by_bucket(period.start, period.end)

        items: list[BudgetSummaryItem] = []
        for budget in budgets:
            if isinstance(budget.target, CategoryTarget):
                spent = spent_by_category.get(budget.category_id, 0)
            else:
                spent = contributed_by_bucket.get(budget.savings_bucket_id, 0)
            items.append(
                BudgetSummaryItem(
                    budget_id=budget.id,
                    category_id=budget.category_id,
                    savings_bucket_id=budget.savings_bucket_id,
                    target_name=budget.target_name,
                    target_type=budget.target_type,
                    budget_amount=budget.amount,
                    spent_amount=spent,
                    remaining=budget.amount - spent,
                    percent_used=_percent(spent, budget.amount),
                )
            )

        total_budget = sum(item.budget_amount for item in items)
        total_spent = sum(item.spent_amount for item in items)
        return BudgetSummary(
            month=period.slug,
            total_budget=total_budget,
            total_spent=total_spent,
            remaining=total_budget - total_spent,
            items=items,
        )

    def copy(self, from_month: str, to_month: str) -> CopyBudgetsResult:
        """Copy every budget of ``from_month`` whose target is not yet budgeted in ``to_month``."""
        data = parse_input(BudgetCopyIn, {"from_month": from_month, "to_month": to_month})
        if data.from_month == data.to_month:
            raise ValidationFailed(
                "Source and destination months must be different",
                issues=[
                    {
                        "field": "to_month",
                        "message": "Source and destination months must be different",
                    }
                ],
            )

        result = CopyBudgetsResult()
        with unit_of_work(self.session):
            source = self.list(data.from_month)
            if not source:
                raise NotFound("No budgets found for source month")
            taken = {budget.target for budget in self.list(data.to_month)}
            for budget in source:
                if budget.target in taken:
                    result.skipped.append(
                        SkippedBudget(
                            category_id=budget.category_id,
                            savings_bucket_id=budget.savings_bucket_id,
                            target_name=budget.target_name,
                        )
                    )
                    continue
                result.created.append(
                    Budget(
                        month=data.to_month,
                        amount=budget.amount,
                        note=budget.note,
                        **_target_columns(budget.target),
                    )
                )
            self.session.add_all(result.created)
            self._flush("Budget already exists for this month")
        logger.info(
            f"budgets_copied: from={data.from_month} to={data.to_month} "
            f"created={len(result.created)} skipped={len(result.skipped)}"
        )
        return result


# --- Reports ----------------------------------------------------------------


@dataclass
class CategorySpend:
    category_id: Optional[int]
    name: str
    amount: int
    transaction_count: int
    percentage: float


@dataclass
class TransactionStats:
    total_income: int = 0
    total_expense: int = 0
    total_transfer: int = 0
    total_savings_contribution: int = 0
    total_savings_withdrawal: int = 0
    transaction_count: int = 0

    @property
    def net(self) -> int:
        return self.total_income - self.total_expense


@dataclass
class MoneyLeftToSpend:
    month: str
    total_budget: int
    total_spent: int
    remaining: int


@dataclass
class SpendingPoint:
    period: str
    amount: int
    transaction_count: int


@dataclass
class NetWorthPoint:
    period: str
    wallet_balance: int
    savings_balance: int

    @property
    def total(self) -> int:
        return self.wallet_balance + self.savings_balance


PERIOD_FORMATS = {"day": "%Y-%m-%d", "month": "%Y-%m-01"}


class ReportService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def category_breakdown(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> list[CategorySpend]:
        """Expense totals per category over ``[start, end)``, largest first."""
        total = func.coalesce(func.sum(func.abs(Posting.amount)), 0).label("total")
        stmt = (
            select(
                TransactionEvent.category_id,
                func.coalesce(Category.name, "Uncategorized").label("name"),
                total,
                func.count(func.distinct(TransactionEvent.id)).label("event_count"),
            )
            .select_from(TransactionEvent)
            .join(Posting, Posting.event_id == TransactionEvent.id)
            .outerjoin(Category, Category.id == TransactionEvent.category_id)
            .where(
                TransactionEvent.type == TransactionType.expense,
                TransactionEvent.deleted_at.is_(None),
            )
            .group_by(TransactionEvent.category_id, Category.name)
            .order_by(total.desc())
        )
        start, end = naive_utc(start), naive_utc(end)
        if start is not None:
            stmt = stmt.where(TransactionEvent.occurred_at >= start)
        if end is not None:
            stmt = stmt.where(TransactionEvent.occurred_at < end)

        rows = self.session.execute(stmt).all()
        grand_total = sum(int(row.total) for row in rows)
        return [
            CategorySpend(
                category_id=row.category_id,
                name=row.name,
                amount=int(row.total),
                transaction_count=int(row.event_count),
                percentage=_percent(int(row.total), grand_total),
            )
            for row in rows
        ]

    def transaction_stats(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> TransactionStats:
        per_event = (
            select(
                TransactionEvent.id.label("id"),
                TransactionEvent.type.label("type"),
                func.max(func.abs(Posting.amount)).label("amount"),
            )
            .join(Posting, Posting.event_id == TransactionEvent.id)
            .where(TransactionEvent.deleted_at.is_(None))
            .group_by(TransactionEvent.id, TransactionEvent.type)
        )
        start, end = naive_utc(start), naive_utc(end)
        if start is not None:
            per_event = per_event.where(TransactionEvent.occurred_at >= start)
        if end is not None:
            per_event = per_event.where(TransactionEvent.occurred_at < end)
        per_event = per_event.subquery()

        rows = self.session.execute(
            select(
                per_event.c.type,
                func.coalesce(func.sum(per_event.c.amount), 0),
                func.count(per_event.c.id),
            ).group_by(per_event.c.type)
        ).all()

        stats = TransactionStats()
        for transaction_type, amount, count in rows:
            setattr(stats, f"total_{TransactionType(transaction_type).value}", int(amount))
            stats.transaction_count += int(count)
        return stats

    def money_left_to_spend(self, month: str) -> MoneyLeftToSpend:
        summary = BudgetService(self.session).summary(month)
        items = [item for item in summary.items if item.target_type == "category"]
        total_budget = sum(item.budget_amount for item in items)
        total_spent = sum(item.spent_amount for item in items)
        return MoneyLeftToSpend(
            month=summary.month,
            total_budget=total_budget,
            total_spent=total_spent,
            remaining=total_budget - total_spent,
        )

    def spending_trend(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        granularity: str = "month",
    ) -> list[SpendingPoint]:
        """Expense totals per day or month over ``[start, end)``, oldest first.

        Periods are keyed ``YYYY-MM-DD`` for days and ``YYYY-MM-01`` for months.
        Periods without live expenses are omitted.
        """
        query = parse_input(
            TrendQuery, {"start": start, "end": end, "granularity": granularity}
        )
        stmt = (
            select(
                func.strftime(
                    PERIOD_FORMATS[query.granularity], TransactionEvent.occurred_at
                ).label("period"),
                func.coalesce(func.sum(func.abs(Posting.amount)), 0).label("total"),
                func.count(func.distinct(TransactionEvent.id)).label("event_count"),
            )
            .select_from(TransactionEvent)
            .join(Posting, Posting.event_id == TransactionEvent.id)
            .where(
                TransactionEvent.type == TransactionType.expense,
                TransactionEvent.deleted_at.is_(None),
            )
            .group_by("period")
            .order_by("period")
        )
        if query.start is not None:
            stmt = stmt.where(TransactionEvent.occurred_at >= query.start)
        if query.end is not None:
            stmt = stmt.where(TransactionEvent.occurred_at < query.end)

        return [
            SpendingPoint(
                period=row.period,
                amount=int(row.total),
                transaction_count=int(row.event_count),
            )
            for row in self.session.execute(stmt)
        ]

    def net_worth_trend(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        granularity: str = "month",
    ) -> list[NetWorthPoint]:
        """Running wallet and savings balances at the close of each period.

        Only periods with live events inside ``[start, end)`` are returned, but
        the balances carry everything posted before ``start``.
        """
        query = parse_input(
            TrendQuery, {"start": start, "end": end, "granularity": granularity}
        )
        stmt = (
            select(
                func.strftime(
                    PERIOD_FORMATS[query.granularity], TransactionEvent.occurred_at
                ).label("period"),
                func.coalesce(
                    func.sum(case((Posting.wallet_id.is_not(None), Posting.amount), else_=0)),
                    0,
                ).label("wallet_delta"),
                func.coalesce(
                    func.sum(
                        case((Posting.savings_bucket_id.is_not(None), Posting.amount), else_=0)
                    ),
                    0,
                ).label("savings_delta"),
                func.max(TransactionEvent.occurred_at).label("last_at"),
            )
            .select_from(Posting)
            .join(TransactionEvent, TransactionEvent.id == Posting.event_id)
            .where(TransactionEvent.deleted_at.is_(None))
            .group_by("period")
            .order_by("period")
        )
        if query.end is not None:
            stmt = stmt.where(TransactionEvent.occurred_at < query.end)

        points: list[NetWorthPoint] = []
        wallet_balance = savings_balance = 0
        for row in self.session.execute(stmt):
            wallet_balance += int(row.wallet_delta)
            savings_balance += int(row.savings_delta)
            if query.start is not None and row.last_at < query.start:
                continue
            points.append(
                NetWorthPoint(
                    period=row.period,
                    wallet_balance=wallet_balance,
                    savings_balance=savings_balance,
                )
            )
        return points
