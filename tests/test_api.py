from datetime import date, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import init_db
from main import app, get_db
from services import seed_categories


@pytest.fixture()
def client():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with TestingSession() as session:
        seed_categories(session)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


def register(client: TestClient, email: str = "ana@example.com") -> dict[str, str]:
    response = client.post(
        "/api/auth/register",
        json={"name": "Ana", "email": email, "password": "hunter22"},
    )
    assert response.status_code == 201
    token = response.json()["data"]["token"]
    return {"Authorization": f"Bearer {token}"}


def category_id(client: TestClient, headers, name: str, kind: str) -> int:
    response = client.get(f"/api/categories?type={kind}", headers=headers)
    return next(c["id"] for c in response.json()["data"]["categories"] if c["name"] == name)


def test_health_and_index_are_public(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["success"] is True

    index = client.get("/")
    assert index.json()["data"]["endpoints"]["accounts"] == "/api/accounts"


def test_protected_routes_require_token(client: TestClient) -> None:
    missing = client.get("/api/accounts")
    assert missing.status_code == 401
    assert missing.json() == {"success": False, "message": "Access token required"}

    invalid = client.get("/api/accounts", headers={"Authorization": "Bearer nope"})
    assert invalid.status_code == 401
    assert invalid.json()["message"] == "Invalid token"


def test_register_login_and_profile(client: TestClient) -> None:
    headers = register(client)

    duplicate = client.post(
        "/api/auth/register",
        json={"name": "Ana", "email": "ana@example.com", "password": "hunter22"},
    )
    assert duplicate.status_code == 409

    login = client.post(
        "/api/auth/login", json={"email": "ana@example.com", "password": "hunter22"}
    )
    assert login.status_code == 200
    assert login.json()["data"]["user"]["email"] == "ana@example.com"

    bad_login = client.post(
        "/api/auth/login", json={"email": "ana@example.com", "password": "wrong"}
    )
    assert bad_login.status_code == 401

    profile = client.get("/api/auth/profile", headers=headers)
    assert profile.json()["data"]["user"]["name"] == "Ana"
    assert "password_hash" not in profile.json()["data"]["user"]


def test_validation_errors_use_envelope(client: TestClient) -> None:
    headers = register(client)

    response = client.post(
        "/api/accounts", json={"name": "", "type": "vault"}, headers=headers
    )

    body = response.json()
    assert response.status_code == 400
    assert body["success"] is False
    assert body["message"] == "Validation error"
    assert {e["field"] for e in body["errors"]} >= {"name", "type"}


def test_transaction_flow_keeps_account_balance(client: TestClient) -> None:
    headers = register(client)
    account = client.post(
        "/api/accounts",
        json={"name": "Checking", "type": "bank", "balance": 100},
        headers=headers,
    ).json()["data"]["account"]
    salary = category_id(client, headers, "Salary", "income")
    food = category_id(client, headers, "Food", "expense")

    created = client.post(
        "/api/transactions",
        json={
            "account_id": account["id"],
            "category_id": salary,
            "amount": 50,
            "type": "income",
            "date": "2025-03-10",
        },
        headers=headers,
    )
    assert created.status_code == 201
    txn = created.json()["data"]["transaction"]
    assert txn["account"]["name"] == "Checking"

    client.post(
        "/api/transactions",
        json={
            "account_id": account["id"],
            "category_id": food,
            "amount": 20.5,
            "type": "expense",
            "date": "2025-03-12",
        },
        headers=headers,
    )
    balance = client.get(f"/api/accounts/{account['id']}", headers=headers)
    assert balance.json()["data"]["account"]["balance"] == 129.5

    updated = client.put(
        f"/api/transactions/{txn['id']}", json={"amount": 80}, headers=headers
    )
    assert updated.status_code == 200
    balance = client.get(f"/api/accounts/{account['id']}", headers=headers)
    assert balance.json()["data"]["account"]["balance"] == 159.5

    listing = client.get(
        "/api/transactions?type=income&start_date=2025-03-01&end_date=2025-03-31&limit=1",
        headers=headers,
    ).json()["data"]
    assert [t["id"] for t in listing["transactions"]] == [txn["id"]]
    assert listing["pagination"] == {
        "current_page": 1,
        "total_pages": 1,
        "total_items": 1,
        "items_per_page": 1,
    }

    blocked = client.delete(f"/api/accounts/{account['id']}", headers=headers)
    assert blocked.status_code == 400

    check = client.get(f"/api/accounts/{account['id']}/reconcile", headers=headers)
    assert check.json()["data"]["consistent"] is True

    monthly = client.get("/api/analytics/monthly?year=2025&month=3", headers=headers)
    summary = monthly.json()["data"]["summary"]
    assert summary["total_income"] == 80.0
    assert summary["total_expense"] == 20.5

    deleted = client.delete(f"/api/transactions/{txn['id']}", headers=headers)
    assert deleted.status_code == 200
    missing = client.get(f"/api/transactions/{txn['id']}", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["message"] == "Transaction not found"


def test_other_users_resources_are_not_found(client: TestClient) -> None:
    owner = register(client)
    stranger = register(client, "ben@example.com")
    account = client.post(
        "/api/accounts", json={"name": "Checking", "type": "bank"}, headers=owner
    ).json()["data"]["account"]

    response = client.get(f"/api/accounts/{account['id']}", headers=stranger)

    assert response.status_code == 404


def test_goal_contribution_reports_completion(client: TestClient) -> None:
    headers = register(client)
    target_date = (date.today() + timedelta(days=90)).isoformat()
    goal = client.post(
        "/api/goals",
        json={"name": "Bike", "target_amount": 100, "target_date": target_date},
        headers=headers,
    ).json()["data"]["goal"]

    partial = client.post(f"/api/goals/{goal['id']}/add", json={"amount": 40}, headers=headers)
    assert partial.json()["message"] == "Contribution added to goal"
    assert partial.json()["data"]["goal"]["progress"] == 40.0

    done = client.post(f"/api/goals/{goal['id']}/add", json={"amount": 60}, headers=headers)
    assert done.json()["message"] == "Goal completed"
    assert done.json()["data"]["goal"]["status"] == "completed"

    again = client.post(f"/api/goals/{goal['id']}/add", json={"amount": 1}, headers=headers)
    assert again.status_code == 400

    upcoming = client.get("/api/goals/upcoming?days=120", headers=headers)
    assert upcoming.json()["data"]["goals"] == []


def test_seeded_projections_are_stable(client: TestClient) -> None:
    headers = register(client)

    first = client.get("/api/analytics/projections?months=3&seed=5", headers=headers)
    second = client.get("/api/analytics/projections?months=3&seed=5", headers=headers)

    assert first.status_code == 200
    assert first.json() == second.json()
    assert len(first.json()["data"]["projections"]) == 3

    too_many = client.get("/api/analytics/projections?months=99", headers=headers)
    assert too_many.status_code == 400


def test_unknown_route_uses_envelope(client: TestClient) -> None:
    response = client.get("/api/nothing")

    assert response.status_code == 404
    assert response.json()["success"] is False


def test_monthly_analysis_rejects_zero_month(client: TestClient) -> None:
    headers = register(client)

    response = client.get("/api/analytics/monthly?year=2025&month=0", headers=headers)

    assert response.status_code == 400
    assert response.json()["success"] is False
