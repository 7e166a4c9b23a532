"""One family payment split across siblings."""
import uuid
from datetime import date, datetime
from decimal import Decimal

import pytest

from tuition_billing.core.exceptions import NotFoundError, ValidationError
from tuition_billing.models.ledger_model import LedgerEntry, LedgerTransaction
from tuition_billing.models.payment_model import Payment, PaymentAllocation
from tuition_billing.models.settlement_model import Settlement
from tuition_billing.schemas.payment_schema import FamilyPaymentCreate, ManualAllocation, PaymentCreate
from tuition_billing.services.family_payment import plan_allocations, post_family_payment
from tuition_billing.services.invoice_service import find_invoice, refresh_invoice
from tuition_billing.services.payment_poster import delete_payment, post_payment
from tuition_billing.utils.database import atomic

from conftest import make_family, make_student, seed_billed_student

PAID_AT = datetime(2024, 9, 20, 9, 0)


@pytest.fixture
def household(db):
    """Anh owes 400,000 for August; Bao owes 300,000 for September."""
    family = make_family(db, "Tran")
    anh = seed_billed_student(db, "Anh", family, rate=200000, days=(date(2024, 8, 5), date(2024, 8, 12)))
    bao = seed_billed_student(db, "Bao", family, rate=150000, days=(date(2024, 9, 2), date(2024, 9, 9)))
    with atomic(db):
        refresh_invoice(db, anh.id, "2024-08")
        refresh_invoice(db, bao.id, "2024-09")
    return family, anh, bao


def _family_pay(db, principal, family, students, amount, **kw):
    payload = FamilyPaymentCreate(
        family_id=family.id,
        student_ids=[s.id for s in students],
        amount=amount,
        occurred_at=PAID_AT,
        **kw,
    )
    return post_family_payment(db, payload, principal)


def _allocations(result) -> dict:
    return {a.student_id: a.amount for a in result.allocations}


# ===================================================================
# Allocation modes
# ===================================================================

def test_oldest_first_pays_the_oldest_invoice_first(db, admin, household):
    family, anh, bao = household

    result = _family_pay(db, admin, family, [anh, bao], 500000)

    assert _allocations(result) == {anh.id: 400000.0, bao.id: 100000.0}
    assert result.leftover_amount == 0.0

    aug = find_invoice(db, anh.id, "2024-08")
    sep = find_invoice(db, bao.id, "2024-09")
    assert (aug.paid_amount, aug.status) == (Decimal("400000.00"), "paid")
    assert (sep.paid_amount, sep.status) == (Decimal("100000.00"), "partial")

    # the cash lands in the payment month, the AR credit in the invoice month
    anh_entries = db.query(LedgerEntry).filter(LedgerEntry.tx_key == f"payment-{result.payment_id}-{anh.id}").all()
    assert {(e.account.code, e.month) for e in anh_entries} == {("CASH", "2024-09"), ("AR", "2024-08")}

    rows = db.query(PaymentAllocation).order_by(PaymentAllocation.allocation_order).all()
    assert [(r.student_id, r.allocated_amount) for r in rows] == [
        (anh.id, Decimal("400000.00")),
        (bao.id, Decimal("100000.00")),
    ]


def test_pro_rata_splits_by_outstanding_balance(db, admin, household):
    family, anh, bao = household

    result = _family_pay(db, admin, family, [anh, bao], 350000, allocation_mode="pro_rata")

    assert _allocations(result) == {anh.id: 200000.0, bao.id: 150000.0}
    assert find_invoice(db, anh.id, "2024-08").paid_amount == Decimal("200000.00")
    assert find_invoice(db, bao.id, "2024-09").paid_amount == Decimal("150000.00")


def test_manual_allocation_with_leftover_to_first_student(db, admin, household):
    family, anh, bao = household

    result = _family_pay(
        db,
        admin,
        family,
        [anh, bao],
        250000,
        allocation_mode="manual",
        manual_allocations=[
            ManualAllocation(student_id=bao.id, amount=100000),
            ManualAllocation(student_id=anh.id, amount=50000),
        ],
    )

    assert result.leftover_amount == 100000.0
    assert _allocations(result) == {bao.id: 100000.0, anh.id: 150000.0}

    # leftover is credited to the payment month, not to the older debt
    assert find_invoice(db, anh.id, "2024-08").paid_amount == Decimal("50000.00")
    assert find_invoice(db, anh.id, "2024-09").paid_amount == Decimal("100000.00")
    assert find_invoice(db, bao.id, "2024-09").paid_amount == Decimal("100000.00")


def test_manual_mode_needs_allocations(db, admin, household):
    family, anh, bao = household
    with pytest.raises(ValidationError):
        _family_pay(db, admin, family, [anh, bao], 100000, allocation_mode="manual")
    assert db.query(Payment).count() == 0


# ===================================================================
# Leftover handling
# ===================================================================

def test_leftover_as_voluntary_contribution(db, admin, household):
    family, anh, bao = household

    result = _family_pay(
        db,
        admin,
        family,
        [anh, bao],
        800000,
        leftover_handling="voluntary_contribution",
        consent_given=True,
    )

    assert result.leftover_amount == 100000.0
    assert result.leftover_handling == "voluntary_contribution"

    # credited then settled: the payment-month invoice ends where it started
    assert find_invoice(db, anh.id, "2024-09").paid_amount == Decimal("0.00")

    settlement = db.query(Settlement).one()
    assert settlement.settlement_type == "voluntary_contribution"
    assert settlement.amount == Decimal("100000.00")

    revenue = [e for e in db.query(LedgerEntry).all() if e.account.code == "REVENUE"]
    assert sum(e.credit for e in revenue) == Decimal("100000.00")

    for tx in db.query(LedgerTransaction).all():
        assert sum(e.debit for e in tx.entries) == sum(e.credit for e in tx.entries)


def test_contribution_needs_consent(db, admin, household):
    family, anh, bao = household
    with pytest.raises(ValidationError):
        _family_pay(db, admin, family, [anh, bao], 800000, leftover_handling="voluntary_contribution")
    assert db.query(Payment).count() == 0


def test_deleting_a_family_payment_reverses_everything(db, admin, household):
    family, anh, bao = household
    result = _family_pay(
        db, admin, family, [anh, bao], 800000, leftover_handling="unapplied_cash"
    )

    deleted = delete_payment(db, result.payment_id, "Bounced transfer", admin)

    assert deleted.reversal_tx_count == 2
    assert set(deleted.affected_students) == {anh.id, bao.id}
    assert find_invoice(db, anh.id, "2024-08").paid_amount == Decimal("0.00")
    assert find_invoice(db, anh.id, "2024-09").paid_amount == Decimal("0.00")
    assert find_invoice(db, bao.id, "2024-09").paid_amount == Decimal("0.00")

    net = {}
    for e in db.query(LedgerEntry).all():
        net[e.account_id] = net.get(e.account_id, Decimal("0")) + e.debit - e.credit
    assert set(net.values()) == {Decimal("0")}


# ===================================================================
# Validation and defaults
# ===================================================================

def test_students_must_belong_to_the_family(db, admin, household):
    family, anh, _ = household
    stranger = make_student(db, "Khoa")
    db.commit()
    with pytest.raises(ValidationError):
        _family_pay(db, admin, family, [anh, stranger], 100000)


def test_unknown_family(db, admin):
    payload = FamilyPaymentCreate(family_id=uuid.uuid4(), student_ids=[uuid.uuid4()], amount=1000)
    with pytest.raises(NotFoundError):
        post_family_payment(db, payload, admin)


def test_post_payment_with_family_id_uses_oldest_first(db, admin, household):
    family, anh, bao = household

    result = post_payment(db, PaymentCreate(family_id=family.id, amount=450000, occurred_at=PAID_AT), admin)

    assert _allocations(result) == {anh.id: 400000.0, bao.id: 50000.0}


def test_plan_allocations_is_pure():
    class Inv:
        def __init__(self, student_id, month, total, paid=0):
            self.student_id = student_id
            self.month = month
            self.total_amount = Decimal(total)
            self.paid_amount = Decimal(paid)

    a, b = uuid.uuid4(), uuid.uuid4()
    invoices = [Inv(a, "2024-07", 100000), Inv(b, "2024-08", 200000, 50000)]

    plan, left = plan_allocations("oldest_first", Decimal("300000"), [a, b], invoices)

    assert plan == [(a, Decimal("100000.00")), (b, Decimal("150000.00"))]
    assert left == Decimal("50000.00")
    assert invoices[1].paid_amount == Decimal(50000)
