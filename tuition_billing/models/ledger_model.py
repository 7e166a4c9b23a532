import uuid

from sqlalchemy import (
    Column, String, DateTime, Numeric, Text, ForeignKey, UniqueConstraint, Index, Uuid
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from tuition_billing.utils.database import Base

ACCOUNT_CODES = ("AR", "CASH", "BANK", "DISCOUNT", "REVENUE", "CREDIT")


class LedgerAccount(Base):
    __tablename__ = "ledger_accounts"
    __table_args__ = (
        UniqueConstraint("student_id", "code", name="uq_ledger_account_student_code"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid, nullable=False, index=True)
    code = Column(String(10), nullable=False)  # AR/CASH/BANK/DISCOUNT/REVENUE/CREDIT

    created_on = Column(DateTime, server_default=func.now())


class LedgerTransaction(Base):
    """
    Header for one balanced group of entries.
    (operation, source_ref) is the idempotency key: the same business event
    cannot be posted twice.
    """

    __tablename__ = "ledger_transactions"
    __table_args__ = (
        UniqueConstraint("operation", "source_ref", name="uq_ledger_tx_operation_source"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    # payment / payment_reversal / payment_deletion / settlement / family_leftover
    operation = Column(String(30), nullable=False)
    source_ref = Column(String(120), nullable=False)
    tx_key = Column(String(200), nullable=True, index=True)

    created_by = Column(Uuid, nullable=True)
    created_on = Column(DateTime, server_default=func.now())

    entries = relationship("LedgerEntry", back_populates="transaction", lazy="selectin")


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    __table_args__ = (
        Index("ix_ledger_entries_account_month", "account_id", "month"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    tx_id = Column(Uuid, ForeignKey("ledger_transactions.id", ondelete="RESTRICT"), nullable=False, index=True)
    tx_key = Column(String(200), nullable=True, index=True)

    account_id = Column(Uuid, ForeignKey("ledger_accounts.id", ondelete="RESTRICT"), nullable=False, index=True)

    debit = Column(Numeric(14, 2), nullable=False, default=0)
    credit = Column(Numeric(14, 2), nullable=False, default=0)

    occurred_at = Column(DateTime, nullable=False)
    month = Column(String(7), nullable=False)  # YYYY-MM
    memo = Column(Text, nullable=True)

    created_by = Column(Uuid, nullable=True)
    created_on = Column(DateTime, server_default=func.now())

    transaction = relationship("LedgerTransaction", back_populates="entries")
    account = relationship("LedgerAccount", lazy="joined")
