from typing import Optional

from models import Account, Category, Goal, Transaction, User
from money import cents_to_amount


def serialize_user(user: User, *, include_created: bool = False) -> dict[str, object]:
    data: dict[str, object] = {"id": user.id, "name": user.name, "email": user.email}
    if include_created:
        data["created_at"] = user.created_at.isoformat() if user.created_at else None
    return data


def serialize_account(account: Account) -> dict[str, object]:
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type.value,
        "balance": cents_to_amount(account.balance_cents),
        "opening_balance": cents_to_amount(account.opening_balance_cents),
        "color": account.color,
        "description": account.description,
        "created_at": account.created_at.isoformat() if account.created_at else None,
        "updated_at": account.updated_at.isoformat() if account.updated_at else None,
    }


def serialize_category(category: Optional[Category]) -> Optional[dict[str, object]]:
    if category is None:
        return None
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "color": category.color,
        "description": category.description,
    }


def _account_ref(account: Optional[Account]) -> Optional[dict[str, object]]:
    if account is None:
        return None
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type.value,
        "color": account.color,
    }


def serialize_transaction(txn: Transaction) -> dict[str, object]:
    return {
        "id": txn.id,
        "type": txn.type.value,
        "amount": cents_to_amount(txn.amount_cents),
        "date": txn.date.isoformat(),
        "description": txn.description,
        "account_id": txn.account_id,
        "destination_account_id": txn.destination_account_id,
        "category_id": txn.category_id,
        "account": _account_ref(txn.account),
        "destination_account": _account_ref(txn.destination_account),
        "category": serialize_category(txn.category),
        "created_at": txn.created_at.isoformat() if txn.created_at else None,
        "updated_at": txn.updated_at.isoformat() if txn.updated_at else None,
    }


def serialize_goal(goal: Goal) -> dict[str, object]:
    return {
        "id": goal.id,
        "name": goal.name,
        "target_amount": cents_to_amount(goal.target_amount_cents),
        "current_amount": cents_to_amount(goal.current_amount_cents),
        "progress": round(goal.progress, 2),
        "target_date": goal.target_date.isoformat(),
        "status": goal.status.value,
        "description": goal.description,
        "created_at": goal.created_at.isoformat() if goal.created_at else None,
        "updated_at": goal.updated_at.isoformat() if goal.updated_at else None,
    }
