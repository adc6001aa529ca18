"""Read-side aggregation over a user's transactions.

Every function here is pure: callers pass transactions already scoped to one
user and date window, and randomness for projections comes from an injected
``random.Random``.
"""

from __future__ import annotations

import random
from datetime import date
from typing import Iterable, Optional, Sequence

from models import Transaction, TransactionType
from money import cents_to_amount, round_money
from periods import add_months

UNCATEGORIZED = "Uncategorized"
DEFAULT_EXPENSE_COLOR = "#6B7280"
DEFAULT_INCOME_COLOR = "#10B981"

PROJECTION_VARIATION = 0.1  # total spread, i.e. +/-5%
LOW_SAVINGS_THRESHOLD = 10.0
HIGH_EXPENSE_RATIO = 0.8


def savings_rate(income_cents: int, expense_cents: int) -> float:
    if income_cents <= 0:
        return 0.0
    return (income_cents - expense_cents) / income_cents * 100


def totals(transactions: Iterable[Transaction]) -> tuple[int, int]:
    income = 0
    expense = 0
    for txn in transactions:
        if txn.type == TransactionType.income:
            income += txn.amount_cents
        elif txn.type == TransactionType.expense:
            expense += txn.amount_cents
    return income, expense


def category_breakdown(
    transactions: Iterable[Transaction], txn_type: TransactionType
) -> list[dict[str, object]]:
    default_color = (
        DEFAULT_INCOME_COLOR
        if txn_type == TransactionType.income
        else DEFAULT_EXPENSE_COLOR
    )
    buckets: dict[str, dict[str, object]] = {}
    for txn in transactions:
        if txn.type != txn_type:
            continue
        category = txn.category
        name = category.name if category is not None else UNCATEGORIZED
        color = (category.color if category is not None else None) or default_color
        bucket = buckets.setdefault(
            name, {"name": name, "color": color, "amount_cents": 0, "count": 0}
        )
        bucket["amount_cents"] += txn.amount_cents
        bucket["count"] += 1

    breakdown = sorted(
        buckets.values(), key=lambda b: (-int(b["amount_cents"]), str(b["name"]))
    )
    return [
        {
            "name": b["name"],
            "color": b["color"],
            "amount": cents_to_amount(int(b["amount_cents"])),
            "count": b["count"],
        }
        for b in breakdown
    ]


def daily_series(transactions: Iterable[Transaction]) -> list[dict[str, object]]:
    days: dict[int, list[int]] = {}
    for txn in transactions:
        if txn.type == TransactionType.transfer:
            continue
        day = days.setdefault(txn.date.day, [0, 0])
        if txn.type == TransactionType.income:
            day[0] += txn.amount_cents
        else:
            day[1] += txn.amount_cents
    return [
        {
            "day": day,
            "income": cents_to_amount(income),
            "expense": cents_to_amount(expense),
            "balance": cents_to_amount(income - expense),
        }
        for day, (income, expense) in sorted(days.items())
    ]


def summarize_month(
    transactions: Sequence[Transaction], year: int, month: int
) -> dict[str, object]:
    income, expense = totals(transactions)
    balance = income - expense
    rate = savings_rate(income, expense)
    return {
        "period": {"year": year, "month": month},
        "summary": {
            "total_income": cents_to_amount(income),
            "total_expense": cents_to_amount(expense),
            "balance": cents_to_amount(balance),
            "savings_rate": round(rate, 2),
            "total_transactions": len(transactions),
        },
        "expenses_by_category": category_breakdown(
            transactions, TransactionType.expense
        ),
        "income_by_category": category_breakdown(transactions, TransactionType.income),
        "daily": daily_series(transactions),
        "alerts": {
            "over_budget": balance < 0,
            "low_savings": rate < LOW_SAVINGS_THRESHOLD,
            "high_expense": expense > income * HIGH_EXPENSE_RATIO,
        },
    }


def monthly_averages(transactions: Iterable[Transaction]) -> tuple[float, float]:
    """Average income and expense (in currency units) per calendar month with data."""
    months: dict[tuple[int, int], list[int]] = {}
    for txn in transactions:
        if txn.type == TransactionType.transfer:
            continue
        bucket = months.setdefault((txn.date.year, txn.date.month), [0, 0])
        if txn.type == TransactionType.income:
            bucket[0] += txn.amount_cents
        else:
            bucket[1] += txn.amount_cents
    if not months:
        return 0.0, 0.0
    count = len(months)
    avg_income = sum(b[0] for b in months.values()) / count / 100
    avg_expense = sum(b[1] for b in months.values()) / count / 100
    return avg_income, avg_expense


def _perturb(average: float, rng: random.Random) -> float:
    return average * (1 + (rng.random() - 0.5) * PROJECTION_VARIATION)


def project_month(
    avg_income: float, avg_expense: float, target: date, rng: random.Random
) -> dict[str, object]:
    income = _perturb(avg_income, rng)
    expense = _perturb(avg_expense, rng)
    return {
        "year": target.year,
        "month": target.month,
        "projected_income": round_money(income),
        "projected_expense": round_money(expense),
        "projected_balance": round_money(income - expense),
    }


def project(
    avg_income: float,
    avg_expense: float,
    months: int,
    *,
    start: date,
    rng: Optional[random.Random] = None,
) -> list[dict[str, object]]:
    rng = rng or random.Random()
    return [
        project_month(avg_income, avg_expense, add_months(start, offset), rng)
        for offset in range(1, months + 1)
    ]


def recommendations(avg_income: float) -> dict[str, float]:
    return {
        "suggested_savings": round_money(avg_income * 0.2),
        "expense_limit": round_money(avg_income * HIGH_EXPENSE_RATIO),
    }
