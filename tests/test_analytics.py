import random
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

import analytics
from database import Base
from models import AccountType, Category, CategoryType, Transaction, TransactionType, User
from schemas import AccountIn, TransactionIn
from services import AccountService, AnalyticsService, TransactionService, ValidationError


def txn(kind: TransactionType, cents: int, day: date, category=None) -> Transaction:
    return Transaction(type=kind, amount_cents=cents, date=day, category=category)


def test_month_summary_totals_and_alerts() -> None:
    salary = Category(name="Salary", type=CategoryType.income, color="#10B981")
    food = Category(name="Food", type=CategoryType.expense, color="#EF4444")
    txns = [
        txn(TransactionType.income, 100000, date(2025, 3, 1), salary),
        txn(TransactionType.expense, 30000, date(2025, 3, 5), food),
    ]

    result = analytics.summarize_month(txns, 2025, 3)

    assert result["summary"]["total_income"] == 1000.0
    assert result["summary"]["total_expense"] == 300.0
    assert result["summary"]["balance"] == 700.0
    assert result["summary"]["savings_rate"] == 70.0
    assert result["alerts"] == {
        "over_budget": False,
        "low_savings": False,
        "high_expense": False,
    }
    assert result["expenses_by_category"] == [
        {"name": "Food", "color": "#EF4444", "amount": 300.0, "count": 1}
    ]
    assert [d["day"] for d in result["daily"]] == [1, 5]


def test_empty_month_has_zero_savings_rate() -> None:
    result = analytics.summarize_month([], 2025, 3)

    assert result["summary"]["savings_rate"] == 0.0
    assert result["summary"]["total_transactions"] == 0
    assert result["alerts"]["over_budget"] is False
    assert result["alerts"]["low_savings"] is True


def test_overspending_raises_all_alerts() -> None:
    txns = [
        txn(TransactionType.income, 10000, date(2025, 3, 1)),
        txn(TransactionType.expense, 12000, date(2025, 3, 2)),
    ]

    alerts = analytics.summarize_month(txns, 2025, 3)["alerts"]

    assert alerts == {"over_budget": True, "low_savings": True, "high_expense": True}


def test_breakdown_buckets_missing_category_as_uncategorized() -> None:
    food = Category(name="Food", type=CategoryType.expense, color="#EF4444")
    txns = [
        txn(TransactionType.expense, 500, date(2025, 3, 1)),
        txn(TransactionType.expense, 700, date(2025, 3, 2)),
        txn(TransactionType.expense, 900, date(2025, 3, 3), food),
    ]

    breakdown = analytics.category_breakdown(txns, TransactionType.expense)

    assert breakdown[0] == {
        "name": analytics.UNCATEGORIZED,
        "color": analytics.DEFAULT_EXPENSE_COLOR,
        "amount": 12.0,
        "count": 2,
    }
    assert breakdown[1]["name"] == "Food"


def test_transfers_are_counted_but_not_totalled() -> None:
    txns = [
        txn(TransactionType.income, 10000, date(2025, 3, 1)),
        txn(TransactionType.transfer, 5000, date(2025, 3, 2)),
    ]

    summary = analytics.summarize_month(txns, 2025, 3)["summary"]

    assert summary["total_income"] == 100.0
    assert summary["total_expense"] == 0.0
    assert summary["total_transactions"] == 2


def test_monthly_averages_use_months_with_data() -> None:
    txns = [
        txn(TransactionType.income, 200000, date(2025, 1, 10)),
        txn(TransactionType.expense, 50000, date(2025, 1, 12)),
        txn(TransactionType.income, 100000, date(2025, 2, 10)),
        txn(TransactionType.transfer, 999900, date(2025, 2, 11)),
    ]

    assert analytics.monthly_averages(txns) == (1500.0, 250.0)
    assert analytics.monthly_averages([]) == (0.0, 0.0)


def test_seeded_projections_are_reproducible() -> None:
    first = analytics.project(1000.0, 400.0, 3, start=date(2025, 11, 15), rng=random.Random(7))
    second = analytics.project(1000.0, 400.0, 3, start=date(2025, 11, 15), rng=random.Random(7))

    assert first == second
    assert [(p["year"], p["month"]) for p in first] == [(2025, 12), (2026, 1), (2026, 2)]
    for point in first:
        assert 950.0 <= point["projected_income"] <= 1050.0
        assert 380.0 <= point["projected_expense"] <= 420.0


def test_recommendations_scale_with_income() -> None:
    assert analytics.recommendations(1000.0) == {
        "suggested_savings": 200.0,
        "expense_limit": 800.0,
    }


def make_session() -> Session:
    engine = create_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def test_analytics_service_reads_only_owner_transactions() -> None:
    with make_session() as session:
        owner = User(name="Ana", email="ana@example.com", password_hash="x")
        other = User(name="Ben", email="ben@example.com", password_hash="x")
        salary = Category(name="Salary", type=CategoryType.income, color="#10B981")
        session.add_all([owner, other, salary])
        session.commit()

        for user, amount in ((owner, "1000"), (other, "5000")):
            account = AccountService(session, user.id).create(
                AccountIn(name="Checking", type=AccountType.bank)
            )
            TransactionService(session, user.id).create(
                TransactionIn(
                    account_id=account.id,
                    category_id=salary.id,
                    amount=Decimal(amount),
                    type=TransactionType.income,
                    date=date(2025, 3, 10),
                )
            )

        service = AnalyticsService(session, owner.id)
        monthly = service.monthly(2025, 3)
        assert monthly["summary"]["total_income"] == 1000.0
        assert monthly["period"]["start_date"] == "2025-03-01"
        assert monthly["period"]["end_date"] == "2025-03-31"

        today = date(2025, 4, 2)
        first = service.projections(4, seed=11, today=today)
        second = service.projections(4, seed=11, today=today)
        assert first == second
        assert first["historical_averages"]["avg_income"] == 1000.0
        assert len(first["projections"]) == 4

        dashboard = service.dashboard(today=date(2025, 3, 20))
        assert dashboard["total_balance"] == 1000.0
        assert dashboard["monthly_summary"]["income"] == 1000.0
        assert len(dashboard["recent_transactions"]) == 1


def test_analytics_service_rejects_bad_ranges() -> None:
    with make_session() as session:
        service = AnalyticsService(session, 1)

        with pytest.raises(ValidationError):
            service.monthly(2025, 13)
        with pytest.raises(ValidationError):
            service.monthly(2025, 0, today=date(2026, 10, 17))
        with pytest.raises(ValidationError):
            service.monthly(0, 5, today=date(2026, 10, 17))
        with pytest.raises(ValidationError):
            service.projections(0)
