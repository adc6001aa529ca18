"""Account balance reconciliation.

An account's ``balance_cents`` is a cache of ``opening_balance_cents`` plus the
postings of every transaction touching the account. Each transaction state
maps to one or two postings (account id, signed delta); a mutation reverses the
postings of the old state and applies the postings of the new state inside the
caller's database transaction. Nothing here commits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from models import Account, Transaction, TransactionType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerEntry:
    type: TransactionType
    amount_cents: int
    account_id: int
    destination_account_id: Optional[int] = None

    @classmethod
    def of(cls, txn: Transaction) -> "LedgerEntry":
        return cls(
            type=txn.type,
            amount_cents=txn.amount_cents,
            account_id=txn.account_id,
            destination_account_id=txn.destination_account_id,
        )


@dataclass(frozen=True)
class Posting:
    account_id: int
    delta_cents: int


class AccountNotFound(LookupError):
    def __init__(self, account_id: int) -> None:
        super().__init__(f"Account {account_id} not found")
        self.account_id = account_id


def signed_delta(txn_type: TransactionType, amount_cents: int) -> int:
    if txn_type == TransactionType.income:
        return amount_cents
    return -amount_cents


def postings_for(entry: LedgerEntry) -> list[Posting]:
    postings = [Posting(entry.account_id, signed_delta(entry.type, entry.amount_cents))]
    if entry.type == TransactionType.transfer:
        if entry.destination_account_id is None:
            raise ValueError("Transfers require a destination account")
        postings.append(Posting(entry.destination_account_id, entry.amount_cents))
    return postings


def reversal_of(postings: Iterable[Posting]) -> list[Posting]:
    return [Posting(p.account_id, -p.delta_cents) for p in postings]


def change_postings(old: LedgerEntry, new: LedgerEntry) -> list[Posting]:
    return reversal_of(postings_for(old)) + postings_for(new)


class BalanceReconciler:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _lock_accounts(self, account_ids: set[int]) -> dict[int, Account]:
        # Ascending id order keeps concurrent writers from deadlocking.
        stmt = (
            select(Account)
            .where(Account.id.in_(sorted(account_ids)), Account.user_id == self.user_id)
            .order_by(Account.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        accounts = {acc.id: acc for acc in self.session.scalars(stmt).all()}
        for account_id in sorted(account_ids):
            if account_id not in accounts:
                raise AccountNotFound(account_id)
        return accounts

    def _owned(self, account_id: int):
        return update(Account).where(
            Account.id == account_id, Account.user_id == self.user_id
        )

    def post(self, postings: list[Posting]) -> None:
        """Lock every touched account once, in id order, then add each delta.

        Deltas are added by the UPDATE statement itself, never written back as
        an absolute balance read earlier.
        """
        if not postings:
            return
        accounts = self._lock_accounts({p.account_id for p in postings})
        for p in postings:
            result = self.session.execute(
                self._owned(p.account_id)
                .values(balance_cents=Account.balance_cents + p.delta_cents)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise AccountNotFound(p.account_id)
            logger.debug(
                f"balance_posting: account_id={p.account_id} delta_cents={p.delta_cents}"
            )
        for account in accounts.values():
            self.session.expire(account, ["balance_cents"])

    def apply(self, entry: LedgerEntry) -> None:
        self.post(postings_for(entry))

    def reverse(self, entry: LedgerEntry) -> None:
        self.post(reversal_of(postings_for(entry)))

    def replace(self, old: LedgerEntry, new: LedgerEntry) -> None:
        self.post(change_postings(old, new))

    def _ledger_delta(self, account_id: int):
        outgoing = (
            select(
                func.coalesce(
                    func.sum(
                        case(
                            (
                                Transaction.type == TransactionType.income,
                                Transaction.amount_cents,
                            ),
                            else_=-Transaction.amount_cents,
                        )
                    ),
                    0,
                )
            )
            .where(Transaction.account_id == account_id)
            .scalar_subquery()
        )
        incoming = (
            select(func.coalesce(func.sum(Transaction.amount_cents), 0))
            .where(
                Transaction.destination_account_id == account_id,
                Transaction.type == TransactionType.transfer,
            )
            .scalar_subquery()
        )
        return outgoing + incoming

    def ledger_balance(self, account: Account) -> int:
        """Recompute the balance of ``account`` from its opening balance and ledger."""
        delta = self.session.execute(select(self._ledger_delta(account.id))).scalar_one()
        return int(account.opening_balance_cents or 0) + int(delta or 0)

    def rebuild(self, account_id: int) -> None:
        """Overwrite the cached balance with the ledger value in a single statement."""
        self._lock_accounts({account_id})
        result = self.session.execute(
            self._owned(account_id)
            .values(
                balance_cents=Account.opening_balance_cents
                + self._ledger_delta(account_id)
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AccountNotFound(account_id)
