from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from errors import ValidationFailed
from ledger import AccountRef, BucketAccount, WalletAccount
from models import CategoryKind, TransactionType, WalletKind
from periods import MONTH_KEY_PATTERN, naive_utc

Amount = Annotated[int, Field(gt=0, strict=True)]
MonthKey = Annotated[str, Field(pattern=MONTH_KEY_PATTERN)]
Note = Annotated[Optional[str], Field(default=None, max_length=500)]


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class WalletIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    kind: WalletKind = WalletKind.bank
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)


class WalletUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    kind: Optional[WalletKind] = None
    archived: Optional[bool] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    kind: CategoryKind = CategoryKind.expense


class CategoryUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    archived: Optional[bool] = None


class SavingsBucketIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None


class SavingsBucketUpdateIn(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    archived: Optional[bool] = None


class _MovementIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    occurred_at: datetime
    amount: Amount
    note: Optional[str] = None
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=36)

    @field_validator("occurred_at")
    @classmethod
    def _naive_utc(cls, value: datetime) -> datetime:
        return naive_utc(value)

    @field_validator("note")
    @classmethod
    def _clean_note(cls, value: Optional[str]) -> Optional[str]:
        return _blank_to_none(value)

    @property
    def source(self) -> Optional[AccountRef]:
        return None

    @property
    def destination(self) -> Optional[AccountRef]:
        return None


class ExpenseIn(_MovementIn):
    type: Literal["expense"] = "expense"
    wallet_id: int
    category_id: int
    payee: Optional[str] = None

    @property
    def source(self) -> AccountRef:
        return WalletAccount(self.wallet_id)


class IncomeIn(_MovementIn):
    type: Literal["income"] = "income"
    wallet_id: int
    payee: Optional[str] = None

    @property
    def destination(self) -> AccountRef:
        return WalletAccount(self.wallet_id)


class TransferIn(_MovementIn):
    type: Literal["transfer"] = "transfer"
    from_wallet_id: int
    to_wallet_id: int

    @model_validator(mode="after")
    def _distinct_wallets(self) -> "TransferIn":
        if self.from_wallet_id == self.to_wallet_id:
            raise ValueError("From and to wallets must be different")
        return self

    @property
    def source(self) -> AccountRef:
        return WalletAccount(self.from_wallet_id)

    @property
    def destination(self) -> AccountRef:
        return WalletAccount(self.to_wallet_id)


class SavingsContributionIn(_MovementIn):
    type: Literal["savings_contribution"] = "savings_contribution"
    wallet_id: int
    bucket_id: int

    @property
    def source(self) -> AccountRef:
        return WalletAccount(self.wallet_id)

    @property
    def destination(self) -> AccountRef:
        return BucketAccount(self.bucket_id)


class SavingsWithdrawalIn(_MovementIn):
    type: Literal["savings_withdrawal"] = "savings_withdrawal"
    wallet_id: int
    bucket_id: int

    @property
    def source(self) -> AccountRef:
        return BucketAccount(self.bucket_id)

    @property
    def destination(self) -> AccountRef:
        return WalletAccount(self.wallet_id)


TransactionIn = Annotated[
    Union[
        ExpenseIn,
        IncomeIn,
        TransferIn,
        SavingsContributionIn,
        SavingsWithdrawalIn,
    ],
    Field(discriminator="type"),
]

TRANSACTION_SHAPES = (
    ExpenseIn,
    IncomeIn,
    TransferIn,
    SavingsContributionIn,
    SavingsWithdrawalIn,
)


class TransactionQuery(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    type: Optional[TransactionType] = None
    wallet_id: Optional[int] = None
    category_id: Optional[int] = None
    include_deleted: bool = False
    limit: int = Field(default=50, ge=1, le=100)
    offset: int = Field(default=0, ge=0)

    @field_validator("start", "end")
    @classmethod
    def _naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(value)


class TrendQuery(BaseModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    granularity: Literal["day", "month"] = "month"

    @field_validator("start", "end")
    @classmethod
    def _naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return naive_utc(value)


class BudgetIn(BaseModel):
    month: MonthKey
    category_id: Optional[int] = None
    savings_bucket_id: Optional[int] = None
    amount: Amount
    note: Note

    @field_validator("note")
    @classmethod
    def _clean_note(cls, value: Optional[str]) -> Optional[str]:
        return _blank_to_none(value)


class BudgetUpdateIn(BaseModel):
    amount: Amount
    note: Note

    @field_validator("note")
    @classmethod
    def _clean_note(cls, value: Optional[str]) -> Optional[str]:
        return _blank_to_none(value)


class BudgetCopyIn(BaseModel):
    from_month: MonthKey
    to_month: MonthKey


class BulkDeleteIn(BaseModel):
    ids: list[int] = Field(..., min_length=1)


class PostingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    wallet_id: Optional[int]
    savings_bucket_id: Optional[int]
    amount: int
    account_name: Optional[str]


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    occurred_at: datetime
    type: TransactionType
    note: Optional[str]
    payee: Optional[str]
    category_id: Optional[int]
    category_name: Optional[str]
    idempotency_key: Optional[str]
    deleted_at: Optional[datetime]
    display_amount: int
    display_account: str
    postings: list[PostingOut]


class WalletOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    kind: WalletKind
    currency: str
    archived: bool


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    kind: CategoryKind
    archived: bool


class SavingsBucketOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str]
    archived: bool
    deleted_at: Optional[datetime]


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    month: str
    category_id: Optional[int]
    savings_bucket_id: Optional[int]
    amount: int
    note: Optional[str]
    target_type: str
    target_name: str


def _issue_message(error: dict[str, Any]) -> str:
    message = str(error.get("msg", "Invalid value"))
    return message.removeprefix("Value error, ")


def parse_input(schema: Any, payload: Any) -> Any:
    """Validate ``payload`` against ``schema``, raising ValidationFailed on bad input."""
    if isinstance(schema, type) and isinstance(payload, schema):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(exclude_unset=True)
    try:
        return TypeAdapter(schema).validate_python(payload)
    except ValidationError as exc:
        issues = [
            {
                "field": ".".join(str(part) for part in error["loc"]),
                "message": _issue_message(error),
            }
            for error in exc.errors()
        ]
        message = issues[0]["message"] if len(issues) == 1 else "Invalid input"
        raise ValidationFailed(message, issues=issues) from exc
