"""
Double-entry storage for student ledgers.

Entries are append-only: corrections are new transactions that invert
earlier ones (see reversal_legs). Every transaction is checked for
sum(debit) == sum(credit) before anything is written.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from tuition_billing.core.exceptions import (
    StateConflictError,
    UnbalancedTransactionError,
    ValidationError,
)
from tuition_billing.models.ledger_model import (
    ACCOUNT_CODES,
    LedgerAccount,
    LedgerEntry,
    LedgerTransaction,
)
from tuition_billing.utils.money import ZERO, money

logger = logging.getLogger(__name__)


@dataclass
class Leg:
    """One side of a transaction before it is posted."""

    account_id: uuid.UUID
    debit: Decimal
    credit: Decimal
    occurred_at: datetime
    month: str
    memo: Optional[str] = None


def debit_leg(account: LedgerAccount, amount, occurred_at: datetime, month: str, memo: str = None) -> Leg:
    return Leg(account.id, money(amount), ZERO, occurred_at, month, memo)


def credit_leg(account: LedgerAccount, amount, occurred_at: datetime, month: str, memo: str = None) -> Leg:
    return Leg(account.id, ZERO, money(amount), occurred_at, month, memo)


def ensure_accounts(db: Session, student_id: uuid.UUID, codes: Iterable[str]) -> dict[str, LedgerAccount]:
    codes = list(dict.fromkeys(codes))
    unknown = [c for c in codes if c not in ACCOUNT_CODES]
    if unknown:
        raise ValidationError(f"Unknown account code(s): {', '.join(unknown)}")

    existing = {
        a.code: a
        for a in db.query(LedgerAccount)
        .filter(LedgerAccount.student_id == student_id, LedgerAccount.code.in_(codes))
        .all()
    }

    for code in codes:
        if code not in existing:
            acc = LedgerAccount(student_id=student_id, code=code)
            db.add(acc)
            existing[code] = acc

    db.flush()
    return existing


def check_balanced(legs: list[Leg]):
    if not legs:
        raise UnbalancedTransactionError("Transaction has no entries")

    for leg in legs:
        if leg.debit < 0 or leg.credit < 0:
            raise UnbalancedTransactionError("Entry amounts must not be negative")
        if (leg.debit == 0) == (leg.credit == 0):
            raise UnbalancedTransactionError("Each entry needs exactly one of debit/credit")

    total_debit = money(sum((leg.debit for leg in legs), ZERO))
    total_credit = money(sum((leg.credit for leg in legs), ZERO))
    if total_debit != total_credit:
        raise UnbalancedTransactionError(
            f"Unbalanced transaction: debit {total_debit} != credit {total_credit}"
        )


def find_transaction(db: Session, operation: str, source_ref: str) -> Optional[LedgerTransaction]:
    return (
        db.query(LedgerTransaction)
        .filter(LedgerTransaction.operation == operation, LedgerTransaction.source_ref == source_ref)
        .first()
    )


def post_transaction(
        db: Session,
        legs: list[Leg],
        *,
        operation: str,
        source_ref: str,
        tx_key: Optional[str] = None,
        created_by: Optional[uuid.UUID] = None,
) -> LedgerTransaction:
    check_balanced(legs)

    if find_transaction(db, operation, source_ref):
        raise StateConflictError(f"Transaction already posted: {operation} {source_ref}")

    tx = LedgerTransaction(
        operation=operation,
        source_ref=source_ref,
        tx_key=tx_key,
        created_by=created_by,
    )
    db.add(tx)
    db.flush()  # gives tx.id

    for leg in legs:
        db.add(
            LedgerEntry(
                tx_id=tx.id,
                tx_key=tx_key,
                account_id=leg.account_id,
                debit=money(leg.debit),
                credit=money(leg.credit),
                occurred_at=leg.occurred_at,
                month=leg.month,
                memo=leg.memo,
                created_by=created_by,
            )
        )
    db.flush()

    logger.info("Posted %s tx %s (%s, %d legs)", operation, tx.id, tx_key, len(legs))
    return tx


def find_entries_by_tx_key_prefix(
        db: Session, prefix: str, student_id: Optional[uuid.UUID] = None
) -> list[LedgerEntry]:
    q = (
        db.query(LedgerEntry)
        .join(LedgerAccount, LedgerAccount.id == LedgerEntry.account_id)
        .filter(LedgerEntry.tx_key.like(f"{prefix}%"))
    )
    if student_id is not None:
        q = q.filter(LedgerAccount.student_id == student_id)
    return q.order_by(LedgerEntry.created_on.asc(), LedgerEntry.id.asc()).all()


def reversal_legs(entries: list[LedgerEntry], memo: str, occurred_at: Optional[datetime] = None) -> list[Leg]:
    """Swap debit/credit of every entry; keeps each entry's month."""
    return [
        Leg(
            account_id=e.account_id,
            debit=money(e.credit),
            credit=money(e.debit),
            occurred_at=occurred_at or e.occurred_at,
            month=e.month,
            memo=memo,
        )
        for e in entries
    ]


def net_ar_credit_by_month(entries: list[LedgerEntry]) -> dict[str, Decimal]:
    """How much the entries reduced AR (credit - debit), per month."""
    out: dict[str, Decimal] = {}
    for e in entries:
        if e.account.code != "AR":
            continue
        out[e.month] = money(out.get(e.month, ZERO) + money(e.credit) - money(e.debit))
    return out


def account_balances(db: Session, student_id: uuid.UUID) -> list[dict]:
    rows = (
        db.query(
            LedgerAccount.code,
            func.coalesce(func.sum(LedgerEntry.debit), 0),
            func.coalesce(func.sum(LedgerEntry.credit), 0),
        )
        .outerjoin(LedgerEntry, LedgerEntry.account_id == LedgerAccount.id)
        .filter(LedgerAccount.student_id == student_id)
        .group_by(LedgerAccount.code)
        .order_by(LedgerAccount.code.asc())
        .all()
    )
    return [
        {
            "code": code,
            "total_debit": money(debit),
            "total_credit": money(credit),
            "balance": money(money(debit) - money(credit)),
        }
        for code, debit, credit in rows
    ]


def student_statement(db: Session, student_id: uuid.UUID, month: Optional[str] = None) -> list[LedgerEntry]:
    q = (
        db.query(LedgerEntry)
        .join(LedgerAccount, LedgerAccount.id == LedgerEntry.account_id)
        .filter(LedgerAccount.student_id == student_id)
    )
    if month:
        q = q.filter(LedgerEntry.month == month)
    return q.order_by(LedgerEntry.occurred_at.asc(), LedgerEntry.created_on.asc()).all()
