import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from main import app, get_db


@pytest.fixture()
def client():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def create(client: TestClient, path: str, payload: dict) -> dict:
    response = client.post(path, json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_income_expense_flow_over_http(client: TestClient) -> None:
    wallet = create(client, "/api/wallets", {"name": "Main"})
    food = create(client, "/api/categories", {"name": "Food"})
    create(
        client,
        "/api/transactions",
        {
            "type": "income",
            "wallet_id": wallet["id"],
            "amount": 1_000_000,
            "occurred_at": "2024-06-01T08:00:00",
        },
    )
    expense = create(
        client,
        "/api/transactions",
        {
            "type": "expense",
            "wallet_id": wallet["id"],
            "category_id": food["id"],
            "amount": 300_000,
            "occurred_at": "2024-06-02T12:00:00",
        },
    )
    assert expense["display_account"] == "Main"
    assert expense["category_name"] == "Food"
    assert expense["postings"][0]["amount"] == -300_000

    stats = client.get(f"/api/wallets/{wallet['id']}/stats").json()
    assert stats == {"balance": 700_000, "transaction_count": 2}

    assert client.post(f"/api/transactions/{expense['id']}/delete").status_code == 200
    assert client.get(f"/api/wallets/{wallet['id']}/stats").json()["balance"] == 1_000_000

    assert client.post(f"/api/transactions/{expense['id']}/restore").status_code == 200
    listed = client.get("/api/wallets").json()
    assert listed[0]["balance"] == 700_000


def test_errors_map_to_status_codes(client: TestClient) -> None:
    wallet = create(client, "/api/wallets", {"name": "Main"})
    payload = {
        "type": "income",
        "wallet_id": wallet["id"],
        "amount": 10,
        "occurred_at": "2024-06-01T08:00:00",
        "idempotency_key": "abc",
    }
    create(client, "/api/transactions", payload)

    duplicate = client.post("/api/transactions", json=payload)
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["reason"] == "conflict"

    invalid = client.post("/api/transactions", json={**payload, "amount": -1, "idempotency_key": None})
    assert invalid.status_code == 422
    body = invalid.json()["error"]
    assert body["reason"] == "validation"
    assert body["issues"][0]["field"].endswith("amount")

    missing = client.get("/api/transactions/999")
    assert missing.status_code == 404
    assert missing.json()["error"]["message"] == "Transaction not found"


def test_update_dispatches_on_type(client: TestClient) -> None:
    wallet = create(client, "/api/wallets", {"name": "Main"})
    event = create(
        client,
        "/api/transactions",
        {"type": "income", "wallet_id": wallet["id"], "amount": 10, "occurred_at": "2024-06-01T08:00:00"},
    )

    response = client.put(
        f"/api/transactions/{event['id']}",
        json={"type": "income", "wallet_id": wallet["id"], "amount": 25, "occurred_at": "2024-06-01T08:00:00"},
    )
    assert response.status_code == 200
    assert response.json()["display_amount"] == 25

    unknown = client.put(f"/api/transactions/{event['id']}", json={"type": "refund"})
    assert unknown.status_code == 422


def test_bulk_delete_returns_partial_failures_as_data(client: TestClient) -> None:
    wallet = create(client, "/api/wallets", {"name": "Main"})
    ids = [
        create(
            client,
            "/api/transactions",
            {"type": "income", "wallet_id": wallet["id"], "amount": n, "occurred_at": "2024-06-01T08:00:00"},
        )["id"]
        for n in (1, 2)
    ]

    response = client.request("DELETE", "/api/transactions", json={"ids": ids + [4242]})

    assert response.status_code == 200
    assert response.json() == {"deleted_count": 2, "failed_ids": [4242]}
    assert client.get("/api/transactions").json()["items"] == []


def test_budget_summary_and_copy_over_http(client: TestClient) -> None:
    wallet = create(client, "/api/wallets", {"name": "Main"})
    food = create(client, "/api/categories", {"name": "Food"})
    create(client, "/api/budgets", {"month": "2024-06-01", "category_id": food["id"], "amount": 500_000})
    create(
        client,
        "/api/transactions",
        {
            "type": "expense",
            "wallet_id": wallet["id"],
            "category_id": food["id"],
            "amount": 200_000,
            "occurred_at": "2024-06-15T10:00:00",
        },
    )

    summary = client.get("/api/budgets/summary", params={"month": "2024-06-01"}).json()
    assert summary["items"][0]["spent_amount"] == 200_000
    assert summary["items"][0]["remaining"] == 300_000
    assert summary["items"][0]["percent_used"] == 40.0

    copied = client.post("/api/budgets/copy", json={"from_month": "2024-06-01", "to_month": "2024-07-01"})
    assert copied.status_code == 200
    assert [b["month"] for b in copied.json()["created"]] == ["2024-07-01"]

    again = client.post("/api/budgets/copy", json={"from_month": "2024-06-01", "to_month": "2024-07-01"})
    assert again.json()["created"] == []
    assert again.json()["skipped"][0]["target_name"] == "Food"

    duplicate = client.post(
        "/api/budgets", json={"month": "2024-06-01", "category_id": food["id"], "amount": 1}
    )
    assert duplicate.status_code == 409

    months = client.get("/api/budgets/months").json()
    assert [m["value"] for m in months] == ["2024-07-01", "2024-06-01"]


def test_report_routes_return_plain_json(client: TestClient) -> None:
    wallet = create(client, "/api/wallets", {"name": "Main"})
    food = create(client, "/api/categories", {"name": "Food"})
    create(client, "/api/budgets", {"month": "2024-06-01", "category_id": food["id"], "amount": 500})
    create(
        client,
        "/api/transactions",
        {"type": "income", "wallet_id": wallet["id"], "amount": 1_000, "occurred_at": "2024-06-01T08:00:00"},
    )
    create(
        client,
        "/api/transactions",
        {
            "type": "expense",
            "wallet_id": wallet["id"],
            "category_id": food["id"],
            "amount": 120,
            "occurred_at": "2024-06-03T12:00:00",
        },
    )

    money_left = client.get("/api/reports/money-left", params={"month": "2024-06-01"})
    assert money_left.json() == {
        "month": "2024-06-01",
        "total_budget": 500,
        "total_spent": 120,
        "remaining": 380,
    }

    trend = client.get("/api/reports/spending-trend", params={"granularity": "day"})
    assert trend.json() == [{"period": "2024-06-03", "amount": 120, "transaction_count": 1}]

    net_worth = client.get("/api/reports/net-worth").json()
    assert net_worth == [
        {"period": "2024-06-01", "wallet_balance": 880, "savings_balance": 0, "total_net_worth": 880}
    ]

    breakdown = client.get("/api/reports/category-breakdown").json()
    assert breakdown[0]["name"] == "Food"

    stats = client.get(f"/api/categories/{food['id']}/stats").json()
    assert stats == {"transaction_count": 1, "total_amount": 120}

    bad = client.get("/api/reports/spending-trend", params={"granularity": "week"})
    assert bad.status_code == 422
