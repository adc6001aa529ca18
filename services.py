from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session, joinedload

import analytics
from auth import hash_password, verify_password
from database import atomic
from models import (
    Account,
    Category,
    CategoryType,
    Goal,
    GoalStatus,
    Transaction,
    TransactionType,
    User,
)
from money import cents_to_amount, round_money, to_cents
from periods import Period, month_period, today_local, trailing_period
from reconcile import AccountNotFound, BalanceReconciler, LedgerEntry
from schemas import (
    AccountIn,
    AccountUpdate,
    GoalIn,
    GoalUpdate,
    LoginIn,
    RegisterIn,
    TransactionIn,
    TransactionUpdate,
)
from serializers import serialize_account, serialize_goal, serialize_transaction

logger = logging.getLogger(__name__)


class NotFoundError(ValueError):
    pass


class ValidationError(ValueError):
    pass


class ConflictError(ValueError):
    pass


class ReferentialConflictError(ValueError):
    pass


class AuthenticationError(ValueError):
    pass


DEFAULT_CATEGORIES: list[tuple[str, CategoryType, str]] = [
    ("Food", CategoryType.expense, "#EF4444"),
    ("Transport", CategoryType.expense, "#F97316"),
    ("Housing", CategoryType.expense, "#EAB308"),
    ("Utilities", CategoryType.expense, "#84CC16"),
    ("Health", CategoryType.expense, "#06B6D4"),
    ("Education", CategoryType.expense, "#3B82F6"),
    ("Entertainment", CategoryType.expense, "#8B5CF6"),
    ("Clothing", CategoryType.expense, "#EC4899"),
    ("Loans", CategoryType.expense, "#DC2626"),
    ("Other Expenses", CategoryType.expense, "#6B7280"),
    ("Salary", CategoryType.income, "#10B981"),
    ("Freelance", CategoryType.income, "#059669"),
    ("Investments", CategoryType.income, "#047857"),
    ("Bonuses", CategoryType.income, "#065F46"),
    ("Sales", CategoryType.income, "#34D399"),
    ("Other Income", CategoryType.income, "#6EE7B7"),
]


def seed_categories(session: Session) -> int:
    existing = session.execute(select(func.count(Category.id))).scalar_one() or 0
    if existing:
        logger.info(f"seed_categories: skipped existing={existing}")
        return 0
    session.add_all(
        Category(name=name, type=cat_type, color=color)
        for name, cat_type, color in DEFAULT_CATEGORIES
    )
    session.commit()
    logger.info(f"seed_categories: created={len(DEFAULT_CATEGORIES)}")
    return len(DEFAULT_CATEGORIES)


def _clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _require_positive_cents(amount, label: str = "Amount") -> int:
    try:
        cents = to_cents(amount)
    except ValueError as exc:
        raise ValidationError(f"{label} is invalid") from exc
    if cents <= 0:
        raise ValidationError(f"{label} must be greater than 0")
    return cents


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def register(self, data: RegisterIn) -> User:
        email = data.email.strip().lower()
        existing = self.session.scalar(select(User).where(User.email == email))
        if existing:
            raise ConflictError("Email is already registered")
        user = User(
            name=data.name.strip(),
            email=email,
            password_hash=hash_password(data.password),
        )
        with atomic(self.session):
            self.session.add(user)
        self.session.refresh(user)
        logger.info(f"user_registered: user_id={user.id}")
        return user

    def authenticate(self, data: LoginIn) -> User:
        email = data.email.strip().lower()
        user = self.session.scalar(select(User).where(User.email == email))
        if not user or not verify_password(data.password, user.password_hash):
            raise AuthenticationError("Invalid credentials")
        return user

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, category_type: Optional[CategoryType] = None) -> list[Category]:
        stmt = select(Category).order_by(Category.type, Category.name)
        if category_type:
            stmt = stmt.where(Category.type == category_type)
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError("Category not found")
        return category


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def create(self, data: AccountIn) -> Account:
        opening = to_cents(data.balance)
        if opening < 0:
            raise ValidationError("Opening balance cannot be negative")
        account = Account(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            opening_balance_cents=opening,
            balance_cents=opening,
            color=data.color,
            description=_clean_text(data.description),
        )
        with atomic(self.session):
            self.session.add(account)
        self.session.refresh(account)
        return account

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.created_at.desc(), Account.id.desc())
        )
        return self.session.scalars(stmt).all()

    def total_balance_cents(self) -> int:
        stmt = select(func.coalesce(func.sum(Account.balance_cents), 0)).where(
            Account.user_id == self.user_id
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def get(self, account_id: int) -> Account:
        account = self.session.scalar(
            select(Account).where(
                Account.id == account_id, Account.user_id == self.user_id
            )
        )
        if not account:
            raise NotFoundError("Account not found")
        return account

    def update(self, account_id: int, data: AccountUpdate) -> Account:
        account = self.get(account_id)
        fields = data.model_fields_set
        if data.name is not None:
            name = data.name.strip()
            if not name:
                raise ValidationError("Name cannot be empty")
            account.name = name
        if data.type is not None:
            account.type = data.type
        if data.color is not None:
            account.color = data.color
        if "description" in fields:
            account.description = _clean_text(data.description)
        with atomic(self.session):
            self.session.flush()
        self.session.refresh(account)
        return account

    def transaction_count(self, account_id: int) -> int:
        stmt = select(func.count(Transaction.id)).where(
            or_(
                Transaction.account_id == account_id,
                Transaction.destination_account_id == account_id,
            )
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        if self.transaction_count(account.id) > 0:
            raise ReferentialConflictError(
                "Cannot delete an account with associated transactions"
            )
        with atomic(self.session):
            self.session.delete(account)

    def summary(self) -> dict[str, object]:
        accounts = self.list_all()
        by_type: dict[str, dict[str, object]] = {}
        for account in accounts:
            bucket = by_type.setdefault(
                account.type.value,
                {"count": 0, "total_balance_cents": 0, "accounts": []},
            )
            bucket["count"] += 1
            bucket["total_balance_cents"] += account.balance_cents
            bucket["accounts"].append(serialize_account(account))

        richest: Optional[Account] = None
        for account in accounts:
            top = richest.balance_cents if richest else 0
            if account.balance_cents > top:
                richest = account

        return {
            "accounts": [serialize_account(a) for a in accounts],
            "total_balance": cents_to_amount(sum(a.balance_cents for a in accounts)),
            "accounts_by_type": {
                key: {
                    "count": bucket["count"],
                    "total_balance": cents_to_amount(int(bucket["total_balance_cents"])),
                    "accounts": bucket["accounts"],
                }
                for key, bucket in by_type.items()
            },
            "total_accounts": len(accounts),
            "richest_account": serialize_account(richest) if richest else None,
        }

    def reconcile(self, account_id: int, *, repair: bool = False) -> dict[str, object]:
        account = self.get(account_id)
        reconciler = BalanceReconciler(self.session, self.user_id)
        cached = int(account.balance_cents)
        ledger = reconciler.ledger_balance(account)
        drift = cached - ledger
        repaired = False
        if repair and drift:
            with atomic(self.session):
                reconciler.rebuild(account.id)
            self.session.expire(account)
            repaired = True
            logger.info(
                f"balance_repaired: account_id={account.id} drift_cents={drift}"
            )
        return {
            "account_id": account.id,
            "cached_balance": cents_to_amount(cached),
            "ledger_balance": cents_to_amount(ledger),
            "drift": cents_to_amount(drift),
            "consistent": drift == 0,
            "repaired": repaired,
        }


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    period: Optional[Period] = None


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.reconciler = BalanceReconciler(session, user_id)

    def _owned_account(self, account_id: int, label: str = "Account") -> Account:
        account = self.session.scalar(
            select(Account).where(
                Account.id == account_id, Account.user_id == self.user_id
            )
        )
        if not account:
            raise NotFoundError(f"{label} not found")
        return account

    def _category_for(self, category_id: int, txn_type: TransactionType) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError("Category not found")
        if txn_type != TransactionType.transfer and category.type.value != txn_type.value:
            raise ValidationError("Category type mismatch")
        return category

    def _destination_for(
        self,
        txn_type: TransactionType,
        account_id: int,
        destination_account_id: Optional[int],
    ) -> Optional[int]:
        if txn_type != TransactionType.transfer:
            if destination_account_id is not None:
                raise ValidationError("Only transfers can have a destination account")
            return None
        if destination_account_id is None:
            raise ValidationError("Transfers require a destination account")
        if destination_account_id == account_id:
            raise ValidationError("Transfer destination must differ from the source account")
        return self._owned_account(destination_account_id, "Destination account").id

    def _post(self, entry: LedgerEntry, *, reverse: bool = False) -> None:
        try:
            if reverse:
                self.reconciler.reverse(entry)
            else:
                self.reconciler.apply(entry)
        except AccountNotFound as exc:
            raise NotFoundError("Account not found") from exc

    def _post_change(self, old: LedgerEntry, new: LedgerEntry) -> None:
        try:
            self.reconciler.replace(old, new)
        except AccountNotFound as exc:
            raise NotFoundError("Account not found") from exc

    def create(self, data: TransactionIn) -> Transaction:
        amount_cents = _require_positive_cents(data.amount)
        account = self._owned_account(data.account_id)
        self._category_for(data.category_id, data.type)
        destination_id = self._destination_for(
            data.type, account.id, data.destination_account_id
        )
        txn = Transaction(
            user_id=self.user_id,
            account_id=account.id,
            destination_account_id=destination_id,
            category_id=data.category_id,
            type=data.type,
            amount_cents=amount_cents,
            date=data.date or today_local(),
            description=_clean_text(data.description),
        )
        with atomic(self.session):
            self.session.add(txn)
            self.session.flush()
            self._post(LedgerEntry.of(txn))
        return self.get(txn.id)

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.account),
                joinedload(Transaction.destination_account),
                joinedload(Transaction.category),
            )
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        txn = self.get(transaction_id)
        fields = data.model_fields_set

        new_type = data.type if data.type is not None else txn.type
        new_account_id = data.account_id if data.account_id is not None else txn.account_id
        new_category_id = (
            data.category_id if data.category_id is not None else txn.category_id
        )
        new_amount = (
            _require_positive_cents(data.amount)
            if data.amount is not None
            else txn.amount_cents
        )
        if "destination_account_id" in fields:
            requested_destination = data.destination_account_id
        elif new_type == TransactionType.transfer:
            requested_destination = txn.destination_account_id
        else:
            requested_destination = None

        self._owned_account(new_account_id)
        self._category_for(new_category_id, new_type)
        new_destination = self._destination_for(
            new_type, new_account_id, requested_destination
        )

        old_entry = LedgerEntry.of(txn)
        new_entry = LedgerEntry(
            type=new_type,
            amount_cents=new_amount,
            account_id=new_account_id,
            destination_account_id=new_destination,
        )
        with atomic(self.session):
            self._post_change(old_entry, new_entry)
            txn.type = new_type
            txn.account_id = new_account_id
            txn.destination_account_id = new_destination
            txn.category_id = new_category_id
            txn.amount_cents = new_amount
            if data.date is not None:
                txn.date = data.date
            if "description" in fields:
                txn.description = _clean_text(data.description)
            self.session.flush()
        self.session.expire(txn)
        return self.get(txn.id)

    def delete(self, transaction_id: int) -> None:
        txn = self.get(transaction_id)
        entry = LedgerEntry.of(txn)
        with atomic(self.session):
            self._post(entry, reverse=True)
            self.session.delete(txn)

    def list(
        self,
        filters: TransactionFilters,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[Transaction], int]:
        conditions = [Transaction.user_id == self.user_id]
        if filters.type:
            conditions.append(Transaction.type == filters.type)
        if filters.account_id:
            conditions.append(
                or_(
                    Transaction.account_id == filters.account_id,
                    Transaction.destination_account_id == filters.account_id,
                )
            )
        if filters.category_id:
            conditions.append(Transaction.category_id == filters.category_id)
        if filters.period:
            conditions.append(
                Transaction.date.between(filters.period.start, filters.period.end)
            )

        total = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(*conditions)
            ).scalar_one()
            or 0
        )
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.account),
                joinedload(Transaction.destination_account),
                joinedload(Transaction.category),
            )
            .where(*conditions)
            .order_by(
                Transaction.date.desc(),
                Transaction.created_at.desc(),
                Transaction.id.desc(),
            )
            .offset(offset)
            .limit(limit)
        )
        return self.session.scalars(stmt).all(), total

    def recent(self, limit: int = 5) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(
                joinedload(Transaction.account),
                joinedload(Transaction.destination_account),
                joinedload(Transaction.category),
            )
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def all_for_period(self, period: Period) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(period.start, period.end),
            )
            .order_by(Transaction.date.asc(), Transaction.id.asc())
        )
        return self.session.scalars(stmt).all()


GOAL_TRANSITIONS: dict[GoalStatus, set[GoalStatus]] = {
    GoalStatus.active: {GoalStatus.paused, GoalStatus.cancelled},
    GoalStatus.paused: {GoalStatus.active, GoalStatus.cancelled},
    GoalStatus.completed: set(),
    GoalStatus.cancelled: set(),
}
TERMINAL_GOAL_STATUSES = {GoalStatus.completed, GoalStatus.cancelled}


class GoalService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def create(self, data: GoalIn, *, today: Optional[date] = None) -> Goal:
        today = today or today_local()
        target_cents = _require_positive_cents(data.target_amount, "Target amount")
        if data.target_date <= today:
            raise ValidationError("Target date must be in the future")
        goal = Goal(
            user_id=self.user_id,
            name=data.name.strip(),
            target_amount_cents=target_cents,
            current_amount_cents=0,
            target_date=data.target_date,
            status=GoalStatus.active,
            description=_clean_text(data.description),
        )
        with atomic(self.session):
            self.session.add(goal)
        self.session.refresh(goal)
        return goal

    def get(self, goal_id: int) -> Goal:
        goal = self.session.scalar(
            select(Goal).where(Goal.id == goal_id, Goal.user_id == self.user_id)
        )
        if not goal:
            raise NotFoundError("Goal not found")
        return goal

    def list_all(self, status: Optional[GoalStatus] = None) -> list[Goal]:
        stmt = (
            select(Goal)
            .where(Goal.user_id == self.user_id)
            .order_by(Goal.created_at.desc(), Goal.id.desc())
        )
        if status:
            stmt = stmt.where(Goal.status == status)
        return self.session.scalars(stmt).all()

    @staticmethod
    def statistics(goals: list[Goal]) -> dict[str, object]:
        total_target = sum(g.target_amount_cents for g in goals)
        total_current = sum(g.current_amount_cents for g in goals)
        return {
            "total_goals": len(goals),
            "active_goals": sum(1 for g in goals if g.status == GoalStatus.active),
            "completed_goals": sum(1 for g in goals if g.status == GoalStatus.completed),
            "total_target_amount": cents_to_amount(total_target),
            "total_current_amount": cents_to_amount(total_current),
            "overall_progress": round(total_current / total_target * 100, 2)
            if total_target
            else 0,
        }

    def update(
        self, goal_id: int, data: GoalUpdate, *, today: Optional[date] = None
    ) -> Goal:
        today = today or today_local()
        goal = self.get(goal_id)
        fields = data.model_fields_set

        new_target = (
            _require_positive_cents(data.target_amount, "Target amount")
            if data.target_amount is not None
            else None
        )
        if data.target_date is not None and data.target_date <= today:
            raise ValidationError("Target date must be in the future")

        status_change = data.status is not None and data.status != goal.status
        if goal.status in TERMINAL_GOAL_STATUSES:
            changes_progress = (
                status_change
                or (new_target is not None and new_target != goal.target_amount_cents)
                or (data.target_date is not None and data.target_date != goal.target_date)
            )
            if changes_progress:
                raise ValidationError(f"Goal is {goal.status.value} and can no longer change")
        if status_change and data.status not in GOAL_TRANSITIONS[goal.status]:
            raise ValidationError(
                f"Cannot change goal status from {goal.status.value} to {data.status.value}"
            )
        resulting_status = data.status if status_change else goal.status
        if (
            resulting_status == GoalStatus.paused
            and new_target is not None
            and new_target <= goal.current_amount_cents
        ):
            raise ValidationError(
                "Resume the goal before lowering its target to the saved amount"
            )

        if data.name is not None:
            name = data.name.strip()
            if not name:
                raise ValidationError("Name cannot be empty")
            goal.name = name
        if new_target is not None:
            goal.target_amount_cents = new_target
        if data.target_date is not None:
            goal.target_date = data.target_date
        if "description" in fields:
            goal.description = _clean_text(data.description)
        if status_change:
            goal.status = data.status
        if (
            goal.status == GoalStatus.active
            and goal.current_amount_cents >= goal.target_amount_cents
        ):
            goal.status = GoalStatus.completed
            logger.info(f"goal_completed: goal_id={goal.id} via=update")

        with atomic(self.session):
            self.session.flush()
        self.session.refresh(goal)
        return goal

    def contribute(self, goal_id: int, amount) -> tuple[Goal, bool]:
        amount_cents = _require_positive_cents(amount)
        goal = self.get(goal_id)
        if goal.status != GoalStatus.active:
            raise ValidationError("Contributions are only accepted for active goals")

        with atomic(self.session):
            added = self.session.execute(
                update(Goal)
                .where(
                    Goal.id == goal.id,
                    Goal.user_id == self.user_id,
                    Goal.status == GoalStatus.active,
                )
                .values(current_amount_cents=Goal.current_amount_cents + amount_cents)
                .execution_options(synchronize_session=False)
            )
            if added.rowcount != 1:
                raise ValidationError("Contributions are only accepted for active goals")
            # Only the contribution that flips the row to completed reports it.
            flipped = self.session.execute(
                update(Goal)
                .where(
                    Goal.id == goal.id,
                    Goal.status == GoalStatus.active,
                    Goal.current_amount_cents >= Goal.target_amount_cents,
                )
                .values(status=GoalStatus.completed)
                .execution_options(synchronize_session=False)
            )
            completed = flipped.rowcount == 1
        self.session.refresh(goal)
        if completed:
            logger.info(f"goal_completed: goal_id={goal.id} via=contribution")
        return goal, completed

    def delete(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        with atomic(self.session):
            self.session.delete(goal)

    def upcoming(self, days: int = 30, *, today: Optional[date] = None) -> list[Goal]:
        if days < 0:
            raise ValidationError("Days must be zero or greater")
        today = today or today_local()
        horizon = today + timedelta(days=days)
        stmt = (
            select(Goal)
            .where(
                Goal.user_id == self.user_id,
                Goal.status == GoalStatus.active,
                Goal.target_date <= horizon,
            )
            .order_by(Goal.target_date.asc(), Goal.id.asc())
        )
        return self.session.scalars(stmt).all()


class AnalyticsService:
    HISTORY_MONTHS = 6
    MAX_PROJECTION_MONTHS = 24

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.transactions = TransactionService(session, user_id)

    def monthly(
        self,
        year: Optional[int] = None,
        month: Optional[int] = None,
        *,
        today: Optional[date] = None,
    ) -> dict[str, object]:
        today = today or today_local()
        if year is None:
            year = today.year
        if month is None:
            month = today.month
        try:
            period = month_period(year, month)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        txns = self.transactions.all_for_period(period)
        result = analytics.summarize_month(txns, year, month)
        result["period"]["start_date"] = period.start.isoformat()
        result["period"]["end_date"] = period.end.isoformat()
        return result

    def projections(
        self,
        months: int = 6,
        *,
        seed: Optional[int] = None,
        today: Optional[date] = None,
        rng: Optional[random.Random] = None,
    ) -> dict[str, object]:
        if not 1 <= months <= self.MAX_PROJECTION_MONTHS:
            raise ValidationError(
                f"Months must be between 1 and {self.MAX_PROJECTION_MONTHS}"
            )
        today = today or today_local()
        history = trailing_period(self.HISTORY_MONTHS, today=today)
        txns = self.transactions.all_for_period(history)
        avg_income, avg_expense = analytics.monthly_averages(txns)
        rng = rng or random.Random(seed)
        return {
            "historical_averages": {
                "avg_income": round_money(avg_income),
                "avg_expense": round_money(avg_expense),
                "avg_balance": round_money(avg_income - avg_expense),
            },
            "projections": analytics.project(
                avg_income, avg_expense, months, start=today, rng=rng
            ),
            "recommendations": analytics.recommendations(avg_income),
        }

    def dashboard(self, *, today: Optional[date] = None) -> dict[str, object]:
        today = today or today_local()
        accounts = AccountService(self.session, self.user_id).list_all()
        total_balance = sum(a.balance_cents for a in accounts)

        month = month_period(today.year, today.month)
        income, expense = analytics.totals(self.transactions.all_for_period(month))

        active_goals = GoalService(self.session, self.user_id).list_all(
            GoalStatus.active
        )
        recent = self.transactions.recent(limit=5)

        return {
            "total_balance": cents_to_amount(total_balance),
            "monthly_summary": {
                "income": cents_to_amount(income),
                "expense": cents_to_amount(expense),
                "balance": cents_to_amount(income - expense),
            },
            "accounts_summary": {
                "total_accounts": len(accounts),
                "accounts": [serialize_account(a) for a in accounts],
            },
            "goals_summary": {
                "total_active_goals": len(active_goals),
                "goals": [serialize_goal(g) for g in active_goals],
            },
            "recent_transactions": [serialize_transaction(t) for t in recent],
        }
