"""Value types shared by the ledger and budget engines.

Accounts, budget targets and posting legs are small tagged unions so the
"exactly one of wallet/bucket" and "exactly one of category/bucket" rules hold
by construction instead of through pairs of nullable ids.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from errors import Conflict


@dataclass(frozen=True)
class WalletAccount:
    wallet_id: int
    kind = "wallet"


@dataclass(frozen=True)
class BucketAccount:
    bucket_id: int
    kind = "savings_bucket"


AccountRef = Union[WalletAccount, BucketAccount]


@dataclass(frozen=True)
class CategoryTarget:
    category_id: int
    kind = "category"


@dataclass(frozen=True)
class BucketTarget:
    bucket_id: int
    kind = "savings_bucket"


BudgetTarget = Union[CategoryTarget, BucketTarget]


@dataclass(frozen=True)
class Leg:
    account: AccountRef
    amount: int


# Sign applied to the amount for each side of a movement, per transaction type.
POSTING_TEMPLATES: dict[str, tuple[tuple[str, int], ...]] = {
    "expense": (("source", -1),),
    "income": (("destination", 1),),
    "transfer": (("source", -1), ("destination", 1)),
    "savings_contribution": (("source", -1), ("destination", 1)),
    "savings_withdrawal": (("source", -1), ("destination", 1)),
}


def build_legs(
    transaction_type: str,
    amount: int,
    *,
    source: Optional[AccountRef] = None,
    destination: Optional[AccountRef] = None,
) -> list[Leg]:
    if amount <= 0:
        raise ValueError("Amount must be positive")
    try:
        template = POSTING_TEMPLATES[transaction_type]
    except KeyError:
        raise ValueError(f"Unknown transaction type: {transaction_type}") from None

    sides = {"source": source, "destination": destination}
    legs: list[Leg] = []
    for side, sign in template:
        account = sides[side]
        if account is None:
            raise ValueError(f"{transaction_type} requires a {side} account")
        legs.append(Leg(account=account, amount=sign * amount))

    if len(legs) == 2 and sum(leg.amount for leg in legs) != 0:
        raise ValueError("Two-sided movements must balance to zero")
    return legs


class EventState(str, Enum):
    active = "active"
    deleted = "deleted"


LIFECYCLE_TRANSITIONS: dict[tuple[str, EventState], EventState] = {
    ("soft_delete", EventState.active): EventState.deleted,
    ("restore", EventState.deleted): EventState.active,
}

_REJECTIONS = {
    "soft_delete": "Transaction is already deleted",
    "restore": "Transaction is not deleted",
}


def next_state(current: EventState, action: str) -> EventState:
    """Return the state ``action`` leads to, or raise Conflict if it is not allowed."""
    try:
        return LIFECYCLE_TRANSITIONS[(action, current)]
    except KeyError:
        raise Conflict(_REJECTIONS.get(action, f"Cannot {action} transaction")) from None
