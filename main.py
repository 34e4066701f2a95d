import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Optional

from fastapi import Body, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from errors import LedgerError, StorageFailure, ValidationFailed
from schemas import (
    BudgetOut,
    CategoryOut,
    SavingsBucketOut,
    TransactionOut,
    WalletOut,
)
from services import (
    BalanceService,
    BudgetService,
    CategoryService,
    ReportService,
    SavingsBucketService,
    TransactionService,
    WalletService,
)

settings = get_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger Engine")

STATUS_BY_REASON = {
    "validation": 422,
    "not_found": 404,
    "conflict": 409,
    "storage_failure": 500,
}

UPDATERS = {
    "expense": "update_expense",
    "income": "update_income",
    "transfer": "update_transfer",
    "savings_contribution": "update_savings_contribution",
    "savings_withdrawal": "update_savings_withdrawal",
}


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    message = exc.message
    if isinstance(exc, StorageFailure):
        logger.error(f"request_failed: path={request.url.path} reason={exc.reason}")
        message = "Internal error, please retry later"
    return JSONResponse(
        status_code=STATUS_BY_REASON.get(exc.reason, 400),
        content={
            "error": {"reason": exc.reason, "message": message, "issues": exc.issues}
        },
    )


def _transaction(event) -> dict[str, Any]:
    return TransactionOut.model_validate(event).model_dump(mode="json")


def _budget(budget) -> dict[str, Any]:
    return BudgetOut.model_validate(budget).model_dump(mode="json")


# Wallets, categories, savings buckets


@app.get("/api/wallets")
def api_wallets(include_archived: bool = False, db: Session = Depends(get_db)):
    wallets = WalletService(db).list_all(include_archived=include_archived)
    balances = BalanceService(db).wallet_balances()
    return [
        {
            **WalletOut.model_validate(wallet).model_dump(mode="json"),
            "balance": balances.get(wallet.id, 0),
        }
        for wallet in wallets
    ]


@app.post("/api/wallets", status_code=201)
def api_create_wallet(payload: dict = Body(...), db: Session = Depends(get_db)):
    wallet = WalletService(db).create(payload)
    return WalletOut.model_validate(wallet).model_dump(mode="json")


@app.patch("/api/wallets/{wallet_id}")
def api_update_wallet(
    wallet_id: int, payload: dict = Body(...), db: Session = Depends(get_db)
):
    wallet = WalletService(db).update(wallet_id, payload)
    return WalletOut.model_validate(wallet).model_dump(mode="json")


@app.delete("/api/wallets/{wallet_id}", status_code=204)
def api_delete_wallet(wallet_id: int, db: Session = Depends(get_db)):
    WalletService(db).delete(wallet_id)


@app.get("/api/wallets/{wallet_id}/stats")
def api_wallet_stats(wallet_id: int, db: Session = Depends(get_db)):
    stats = BalanceService(db).wallet_stats(wallet_id)
    return {"balance": stats.balance, "transaction_count": stats.transaction_count}


@app.get("/api/categories")
def api_categories(include_archived: bool = False, db: Session = Depends(get_db)):
    categories = CategoryService(db).list_all(include_archived=include_archived)
    return [CategoryOut.model_validate(c).model_dump(mode="json") for c in categories]


@app.post("/api/categories", status_code=201)
def api_create_category(payload: dict = Body(...), db: Session = Depends(get_db)):
    category = CategoryService(db).create(payload)
    return CategoryOut.model_validate(category).model_dump(mode="json")


@app.delete("/api/categories/{category_id}", status_code=204)
def api_delete_category(category_id: int, db: Session = Depends(get_db)):
    CategoryService(db).delete(category_id)


@app.get("/api/categories/{category_id}/stats")
def api_category_stats(category_id: int, db: Session = Depends(get_db)):
    stats = CategoryService(db).stats(category_id)
    return {
        "transaction_count": stats.transaction_count,
        "total_amount": stats.total_amount,
    }


@app.get("/api/savings-buckets")
def api_savings_buckets(
    include_archived: bool = False, db: Session = Depends(get_db)
):
    buckets = SavingsBucketService(db).list_all(include_archived=include_archived)
    return [SavingsBucketOut.model_validate(b).model_dump(mode="json") for b in buckets]


@app.post("/api/savings-buckets", status_code=201)
def api_create_savings_bucket(
    payload: dict = Body(...), db: Session = Depends(get_db)
):
    bucket = SavingsBucketService(db).create(payload)
    return SavingsBucketOut.model_validate(bucket).model_dump(mode="json")


@app.delete("/api/savings-buckets/{bucket_id}", status_code=204)
def api_delete_savings_bucket(bucket_id: int, db: Session = Depends(get_db)):
    SavingsBucketService(db).delete(bucket_id)


@app.get("/api/savings-buckets/{bucket_id}/stats")
def api_savings_bucket_stats(bucket_id: int, db: Session = Depends(get_db)):
    stats = BalanceService(db).bucket_stats(bucket_id)
    return {"balance": stats.balance, "transaction_count": stats.transaction_count}


# Transactions


@app.get("/api/transactions")
def api_transactions(
    start: Optional[str] = None,
    end: Optional[str] = None,
    type: Optional[str] = None,
    wallet_id: Optional[int] = None,
    category_id: Optional[int] = None,
    include_deleted: bool = False,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    query = {
        "start": start,
        "end": end,
        "type": type,
        "wallet_id": wallet_id,
        "category_id": category_id,
        "include_deleted": include_deleted,
        "limit": limit,
        "offset": offset,
    }
    events = TransactionService(db).list(
        {key: value for key, value in query.items() if value is not None}
    )
    return {"items": [_transaction(event) for event in events], "limit": limit, "offset": offset}


@app.post("/api/transactions", status_code=201)
def api_create_transaction(payload: dict = Body(...), db: Session = Depends(get_db)):
    return _transaction(TransactionService(db).create(payload))


@app.delete("/api/transactions")
def api_bulk_delete_transactions(
    payload: dict = Body(...), db: Session = Depends(get_db)
):
    result = TransactionService(db).bulk_delete(payload.get("ids"))
    return {"deleted_count": result.deleted_count, "failed_ids": result.failed_ids}


@app.get("/api/transactions/{event_id}")
def api_transaction(
    event_id: int, include_deleted: bool = False, db: Session = Depends(get_db)
):
    return _transaction(
        TransactionService(db).get(event_id, include_deleted=include_deleted)
    )


@app.put("/api/transactions/{event_id}")
def api_update_transaction(
    event_id: int, payload: dict = Body(...), db: Session = Depends(get_db)
):
    payload = dict(payload)
    method = UPDATERS.get(payload.pop("type", None))
    if method is None:
        raise ValidationFailed(
            "Unknown transaction type",
            issues=[{"field": "type", "message": "Unknown transaction type"}],
        )
    event = getattr(TransactionService(db), method)(event_id, payload)
    return _transaction(event)


@app.post("/api/transactions/{event_id}/delete")
def api_soft_delete_transaction(event_id: int, db: Session = Depends(get_db)):
    event = TransactionService(db).soft_delete(event_id)
    return {"id": event.id, "deleted_at": event.deleted_at.isoformat()}


@app.post("/api/transactions/{event_id}/restore")
def api_restore_transaction(event_id: int, db: Session = Depends(get_db)):
    return _transaction(TransactionService(db).restore(event_id))


@app.delete("/api/transactions/{event_id}", status_code=204)
def api_permanent_delete_transaction(event_id: int, db: Session = Depends(get_db)):
    TransactionService(db).permanent_delete(event_id)


# Budgets


@app.get("/api/budgets")
def api_budgets(month: Optional[str] = None, db: Session = Depends(get_db)):
    return [_budget(budget) for budget in BudgetService(db).list(month)]


@app.post("/api/budgets", status_code=201)
def api_create_budget(payload: dict = Body(...), db: Session = Depends(get_db)):
    return _budget(BudgetService(db).create(payload))


@app.delete("/api/budgets")
def api_bulk_delete_budgets(payload: dict = Body(...), db: Session = Depends(get_db)):
    result = BudgetService(db).bulk_delete(payload.get("ids"))
    return {"deleted_count": result.deleted_count, "failed_ids": result.failed_ids}


@app.get("/api/budgets/months")
def api_budget_months(db: Session = Depends(get_db)):
    return [
        {"value": m.value, "label": m.label, "budget_count": m.budget_count}
        for m in BudgetService(db).months()
    ]


@app.get("/api/budgets/summary")
def api_budget_summary(month: str, db: Session = Depends(get_db)):
    return asdict(BudgetService(db).summary(month))


@app.post("/api/budgets/copy")
def api_copy_budgets(payload: dict = Body(...), db: Session = Depends(get_db)):
    result = BudgetService(db).copy(payload.get("from_month"), payload.get("to_month"))
    return {
        "created": [_budget(budget) for budget in result.created],
        "skipped": [asdict(skipped) for skipped in result.skipped],
    }


@app.delete("/api/budgets/months/{month}")
def api_delete_budget_month(month: str, db: Session = Depends(get_db)):
    return {"deleted_count": BudgetService(db).delete_month(month)}


@app.get("/api/budgets/{budget_id}")
def api_budget(budget_id: int, db: Session = Depends(get_db)):
    return _budget(BudgetService(db).get(budget_id))


@app.patch("/api/budgets/{budget_id}")
def api_update_budget(
    budget_id: int, payload: dict = Body(...), db: Session = Depends(get_db)
):
    return _budget(BudgetService(db).update(budget_id, payload))


@app.delete("/api/budgets/{budget_id}", status_code=204)
def api_delete_budget(budget_id: int, db: Session = Depends(get_db)):
    BudgetService(db).delete(budget_id)


# Reports


@app.get("/api/reports/category-breakdown")
def api_category_breakdown(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    return [asdict(row) for row in ReportService(db).category_breakdown(start, end)]


@app.get("/api/reports/spending-trend")
def api_spending_trend(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    granularity: str = "month",
    db: Session = Depends(get_db),
):
    points = ReportService(db).spending_trend(start, end, granularity)
    return [asdict(point) for point in points]


@app.get("/api/reports/net-worth")
def api_net_worth_trend(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    granularity: str = "month",
    db: Session = Depends(get_db),
):
    return [
        {
            "period": point.period,
            "wallet_balance": point.wallet_balance,
            "savings_balance": point.savings_balance,
            "total_net_worth": point.total,
        }
        for point in ReportService(db).net_worth_trend(start, end, granularity)
    ]


@app.get("/api/reports/stats")
def api_transaction_stats(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    db: Session = Depends(get_db),
):
    stats = ReportService(db).transaction_stats(start, end)
    return {
        "total_income": stats.total_income,
        "total_expense": stats.total_expense,
        "total_transfer": stats.total_transfer,
        "total_savings_contribution": stats.total_savings_contribution,
        "total_savings_withdrawal": stats.total_savings_withdrawal,
        "net": stats.net,
        "transaction_count": stats.transaction_count,
    }


@app.get("/api/reports/money-left")
def api_money_left(month: str, db: Session = Depends(get_db)):
    return asdict(ReportService(db).money_left_to_spend(month))


def main() -> None:
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
