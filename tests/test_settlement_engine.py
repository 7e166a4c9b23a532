import logging
import uuid
from decimal import Decimal

import pytest

from tuition_billing.core.exceptions import ForbiddenError, NotFoundError, StateConflictError, ValidationError
from tuition_billing.models.ledger_model import LedgerEntry, LedgerTransaction
from tuition_billing.models.settlement_model import Settlement
from tuition_billing.schemas.payment_schema import PaymentCreate
from tuition_billing.schemas.settlement_schema import SettlementCreate
from tuition_billing.services import invoice_service, settlement_engine
from tuition_billing.services.invoice_service import find_invoice
from tuition_billing.services.payment_poster import post_payment
from tuition_billing.services.settlement_engine import settle_bill


def _settle(db, principal, student, settlement_type, amount, **kw):
    kw.setdefault("reason", "Agreed with parent")
    payload = SettlementCreate(
        student_id=student.id,
        month="2024-09",
        settlement_type=settlement_type,
        amount=amount,
        **kw,
    )
    return settle_bill(db, payload, principal)


@pytest.fixture
def owing(db, admin, sept_student, paid_at):
    """756,000 due, 700,000 paid: 56,000 owed."""
    post_payment(db, PaymentCreate(student_id=sept_student.id, amount=700000, occurred_at=paid_at), admin)
    return sept_student


@pytest.fixture
def in_credit(db, admin, sept_student, paid_at):
    """756,000 due, 800,000 paid: 44,000 credit."""
    post_payment(db, PaymentCreate(student_id=sept_student.id, amount=800000, occurred_at=paid_at), admin)
    return sept_student


def _entries(db, tx_id):
    return {e.account.code: e for e in db.query(LedgerEntry).filter(LedgerEntry.tx_id == tx_id).all()}


# ===================================================================
# Discount
# ===================================================================

def test_discount_is_clamped_to_the_balance(db, admin, owing):
    result = _settle(db, admin, owing, "discount", 100000, approver_name="Ms. Lan")

    assert result.requested_amount == 100000.0
    assert result.amount == 56000.0
    assert result.before_balance == 56000.0
    assert result.after_balance == 0.0

    entries = _entries(db, result.tx_id)
    assert entries["DISCOUNT"].debit == Decimal("56000.00")
    assert entries["AR"].credit == Decimal("56000.00")

    invoice = find_invoice(db, owing.id, "2024-09")
    assert invoice.status == "paid"

    row = db.query(Settlement).one()
    assert row.approver_name == "Ms. Lan"
    assert row.requested_amount == Decimal("100000.00")
    assert row.tx_id == result.tx_id


def test_discount_on_credit_balance_conflicts(db, admin, in_credit):
    with pytest.raises(StateConflictError):
        _settle(db, admin, in_credit, "discount", 10000)
    assert db.query(Settlement).count() == 0


# ===================================================================
# Credit-side settlements
# ===================================================================

def test_voluntary_contribution(db, admin, in_credit):
    result = _settle(db, admin, in_credit, "voluntary_contribution", 50000, consent_given=True)

    assert result.amount == 44000.0
    assert result.before_balance == -44000.0
    assert result.after_balance == 0.0

    entries = _entries(db, result.tx_id)
    assert entries["AR"].debit == Decimal("44000.00")
    assert entries["REVENUE"].credit == Decimal("44000.00")

    invoice = find_invoice(db, in_credit.id, "2024-09")
    assert invoice.paid_amount == Decimal("756000.00")
    assert invoice.status == "paid"


def test_contribution_requires_consent(db, admin, in_credit):
    with pytest.raises(ValidationError):
        _settle(db, admin, in_credit, "voluntary_contribution", 10000)
    assert db.query(LedgerTransaction).filter(LedgerTransaction.operation == "settlement").count() == 0


def test_unapplied_cash_goes_to_credit_account(db, admin, in_credit):
    result = _settle(db, admin, in_credit, "unapplied_cash", 20000)

    assert result.amount == 20000.0
    assert result.after_balance == -24000.0
    entries = _entries(db, result.tx_id)
    assert entries["CREDIT"].credit == Decimal("20000.00")


def test_same_credit_cannot_be_settled_twice(db, admin, in_credit):
    _settle(db, admin, in_credit, "unapplied_cash", 44000)
    with pytest.raises(StateConflictError):
        _settle(db, admin, in_credit, "voluntary_contribution", 44000, consent_given=True)


@pytest.mark.parametrize("settlement_type", ["voluntary_contribution", "unapplied_cash"])
def test_credit_settlement_on_debit_balance_conflicts(db, admin, owing, settlement_type):
    with pytest.raises(StateConflictError):
        _settle(db, admin, owing, settlement_type, 10000, consent_given=True)


# ===================================================================
# Guards
# ===================================================================

def test_missing_invoice(db, admin, sept_student):
    with pytest.raises(NotFoundError):
        _settle(db, admin, sept_student, "discount", 10000)


def test_non_admin(db, staff, owing):
    with pytest.raises(ForbiddenError):
        _settle(db, staff, owing, "discount", 10000)


def test_reason_is_required(db, admin, owing):
    with pytest.raises(ValidationError):
        _settle(db, admin, owing, "discount", 10000, reason="  ")


def test_unknown_student_has_no_invoice(db, admin):
    payload = SettlementCreate(
        student_id=uuid.uuid4(),
        month="2024-09",
        settlement_type="discount",
        amount=1000,
        reason="x",
    )
    with pytest.raises(NotFoundError):
        settle_bill(db, payload, admin)


# ===================================================================
# Failures
# ===================================================================

def test_failure_after_posting_rolls_back_the_settlement(db, admin, owing, monkeypatch):
    def fail(*args, **kwargs):
        raise RuntimeError("audit store unavailable")

    monkeypatch.setattr(settlement_engine, "record_audit", fail)

    with pytest.raises(RuntimeError):
        _settle(db, admin, owing, "discount", 56000)

    assert db.query(Settlement).count() == 0
    assert db.query(LedgerTransaction).filter(LedgerTransaction.operation == "settlement").count() == 0
    invoice = find_invoice(db, owing.id, "2024-09")
    assert invoice.paid_amount == Decimal("700000.00")
    assert invoice.status == "partial"


def test_recompute_failure_keeps_the_committed_settlement(db, admin, owing, monkeypatch, caplog):
    def fail(*args, **kwargs):
        raise RuntimeError("calculator down")

    monkeypatch.setattr(invoice_service, "refresh_invoice", fail)
    caplog.set_level(logging.ERROR, logger="tuition_billing.services.invoice_service")

    result = _settle(db, admin, owing, "discount", 56000)

    assert result.after_balance == 0.0
    assert db.query(Settlement).one().tx_id == result.tx_id
    assert len(_entries(db, result.tx_id)) == 2
    assert find_invoice(db, owing.id, "2024-09").status == "paid"
    assert any("Invoice recompute failed" in r.getMessage() for r in caplog.records)
