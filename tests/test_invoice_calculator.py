"""Tuition calculation: billable sessions, discount rules, sibling state."""
from datetime import date
from decimal import Decimal

import pytest

from tuition_billing.core.exceptions import NotFoundError, ValidationError
from tuition_billing.models.discount_model import (
    DiscountAssignment,
    DiscountDefinition,
    ReferralBonus,
    SiblingDiscountState,
)
from tuition_billing.models.invoice_model import Invoice
from tuition_billing.services.discount_rules import (
    AssignedDiscount,
    EnrollmentDiscount,
    ReferralBonus as ReferralRule,
    SiblingDiscount,
    apply_rules,
)
from tuition_billing.services.invoice_calculator import calculate_tuition

from conftest import SEPT_DAYS, add_session, enroll, make_class, make_family, make_student, seed_billed_student


# ===================================================================
# Discount rules (pure)
# ===================================================================

def test_rules_apply_in_fixed_order_against_the_base():
    base = Decimal("1000000.00")
    rules = [
        SiblingDiscount(percent=Decimal("10")),
        ReferralRule(kind="percent", value=Decimal("5")),
        AssignedDiscount(name="Scholarship", kind="amount", value=Decimal("50000")),
        EnrollmentDiscount(kind="percent", value=Decimal("10"), cadence="monthly"),
    ]
    lines, total = apply_rules(base, rules)

    assert [line.name for line in lines] == [
        "Enrollment Discount",
        "Scholarship",
        "Referral Bonus",
        "Sibling Discount",
    ]
    assert [line.amount for line in lines] == [
        Decimal("100000.00"),
        Decimal("50000.00"),
        Decimal("50000.00"),
        Decimal("100000.00"),
    ]
    assert total == Decimal("300000.00")
    assert lines[-1].is_sibling_winner is True


def test_yearly_enrollment_discount_is_not_applied_monthly():
    lines, total = apply_rules(
        Decimal("840000"),
        [EnrollmentDiscount(kind="percent", value=Decimal("10"), cadence="yearly")],
    )
    assert lines == []
    assert total == 0


def test_percent_discount_rounds_to_whole_dong():
    lines, _ = apply_rules(
        Decimal("105005"),
        [EnrollmentDiscount(kind="percent", value=Decimal("10"), cadence="once")],
    )
    assert lines[0].amount == Decimal("10501.00")


# ===================================================================
# calculate_tuition
# ===================================================================

def test_example_month(db, sept_student):
    snap = calculate_tuition(db, sept_student.id, "2024-09")

    assert snap.session_count == 4
    assert snap.base_amount == Decimal("840000.00")
    assert len(snap.discounts) == 1
    assert snap.discounts[0].name == "Enrollment Discount"
    assert snap.discounts[0].amount == Decimal("84000.00")
    assert snap.total_discount == Decimal("84000.00")
    assert snap.total_amount == Decimal("756000.00")


def test_calculation_is_idempotent(db, sept_student):
    assert calculate_tuition(db, sept_student.id, "2024-09") == calculate_tuition(db, sept_student.id, "2024-09")


def test_only_billable_sessions_count(db):
    student = make_student(db)
    cls = make_class(db, 100000)
    enroll(db, student, cls)
    add_session(db, cls, student, date(2024, 9, 2), attendance="Present")
    add_session(db, cls, student, date(2024, 9, 4), attendance="Absent")
    add_session(db, cls, student, date(2024, 9, 6), attendance="Excused")
    add_session(db, cls, student, date(2024, 9, 9), status="Canceled")
    add_session(db, cls, student, date(2024, 9, 11), attendance=None)
    add_session(db, cls, student, date(2024, 10, 1))
    db.commit()

    snap = calculate_tuition(db, student.id, "2024-09")
    assert snap.session_count == 2
    assert snap.base_amount == Decimal("200000.00")
    assert {s.attendance for s in snap.session_details} == {"Present", "Absent"}


def test_ended_enrollment_is_not_billed(db):
    student = make_student(db)
    cls = make_class(db)
    enroll(db, student, cls, start=date(2024, 1, 1), end=date(2024, 8, 31))
    add_session(db, cls, student, date(2024, 9, 3))
    db.commit()

    snap = calculate_tuition(db, student.id, "2024-09")
    assert snap.session_count == 0
    assert snap.total_amount == Decimal("0.00")


def test_total_is_floored_at_zero(db):
    student = seed_billed_student(
        db,
        days=SEPT_DAYS,
        discount_type="amount",
        discount_value=Decimal("2000000"),
        discount_cadence="monthly",
    )
    snap = calculate_tuition(db, student.id, "2024-09")

    assert snap.total_discount == Decimal("2000000.00")
    assert snap.total_amount == Decimal("0.00")


def test_assigned_and_referral_discounts(db, sept_student):
    definition = DiscountDefinition(name="Early bird", type="amount", value=Decimal("40000"))
    retired = DiscountDefinition(name="Old promo", type="percent", value=Decimal("50"), is_active=False)
    db.add_all([definition, retired])
    db.flush()
    db.add_all(
        [
            DiscountAssignment(
                student_id=sept_student.id,
                discount_definition_id=definition.id,
                effective_from=date(2024, 9, 1),
            ),
            DiscountAssignment(
                student_id=sept_student.id,
                discount_definition_id=retired.id,
                effective_from=date(2024, 1, 1),
            ),
            ReferralBonus(
                student_id=sept_student.id,
                type="percent",
                value=Decimal("5"),
                effective_from=date(2024, 9, 1),
                effective_to=date(2024, 9, 30),
            ),
        ]
    )
    db.commit()

    snap = calculate_tuition(db, sept_student.id, "2024-09")
    names = [d.name for d in snap.discounts]
    assert names == ["Enrollment Discount", "Early bird", "Referral Bonus"]
    # 84,000 + 40,000 + 42,000
    assert snap.total_discount == Decimal("166000.00")
    assert snap.total_amount == Decimal("674000.00")

    october = calculate_tuition(db, sept_student.id, "2024-10")
    assert "Referral Bonus" not in [d.name for d in october.discounts]


def test_sibling_discount_only_for_the_winner(db):
    family = make_family(db)
    older = seed_billed_student(db, "Binh", family, days=SEPT_DAYS)
    younger = seed_billed_student(db, "Chi", family, days=SEPT_DAYS)
    db.add(
        SiblingDiscountState(
            family_id=family.id,
            month="2024-09",
            status="assigned",
            winner_student_id=younger.id,
            sibling_percent=Decimal("10"),
        )
    )
    db.commit()

    winner = calculate_tuition(db, younger.id, "2024-09")
    other = calculate_tuition(db, older.id, "2024-09")

    assert [d.name for d in winner.discounts] == ["Sibling Discount"]
    assert winner.total_amount == Decimal("756000.00")
    assert winner.sibling_state.is_winner is True

    assert other.discounts == []
    assert other.total_amount == Decimal("840000.00")
    assert other.sibling_state.is_winner is False


def test_pending_sibling_state_gives_no_discount(db):
    family = make_family(db)
    student = seed_billed_student(db, "Dung", family, days=SEPT_DAYS)
    db.add(
        SiblingDiscountState(
            family_id=family.id,
            month="2024-09",
            status="pending",
            winner_student_id=student.id,
            sibling_percent=Decimal("10"),
            reason="Waiting for enrollment",
        )
    )
    db.commit()

    snap = calculate_tuition(db, student.id, "2024-09")
    assert snap.discounts == []
    assert snap.sibling_state.status == "pending"
    assert snap.sibling_state.reason == "Waiting for enrollment"


def test_unknown_student(db):
    import uuid

    with pytest.raises(NotFoundError):
        calculate_tuition(db, uuid.uuid4(), "2024-09")


def test_bad_month(db, sept_student):
    with pytest.raises(ValidationError):
        calculate_tuition(db, sept_student.id, "2024-13")


# ===================================================================
# Carry across months
# ===================================================================

def _invoice(db, student, month, total, paid, status):
    db.add(
        Invoice(
            student_id=student.id,
            month=month,
            total_amount=Decimal(total),
            paid_amount=Decimal(paid),
            status=status,
        )
    )
    db.commit()


def test_credit_is_carried_into_the_month(db, sept_student):
    _invoice(db, sept_student, "2024-08", "400000", "500000", "paid")

    carry = calculate_tuition(db, sept_student.id, "2024-09").carry

    assert carry.carry_in_credit == Decimal("100000.00")
    assert carry.carry_in_debt == Decimal("0.00")
    assert carry.month_paid == Decimal("0.00")
    assert carry.carry_out_debt == Decimal("656000.00")
    assert carry.balance_status == "debt"


def test_month_paid_net_of_carried_credit_is_settled(db, sept_student):
    _invoice(db, sept_student, "2024-08", "400000", "500000", "paid")
    _invoice(db, sept_student, "2024-09", "756000", "656000", "partial")

    carry = calculate_tuition(db, sept_student.id, "2024-09").carry

    assert carry.month_paid == Decimal("656000.00")
    assert carry.carry_out_credit == Decimal("0.00")
    assert carry.carry_out_debt == Decimal("0.00")
    assert carry.balance_status == "settled"


def test_debt_carried_in_and_later_months_ignored(db, sept_student):
    _invoice(db, sept_student, "2024-07", "300000", "100000", "partial")
    _invoice(db, sept_student, "2024-10", "500000", "900000", "paid")

    carry = calculate_tuition(db, sept_student.id, "2024-09").carry

    assert carry.carry_in_debt == Decimal("200000.00")
    assert carry.carry_out_debt == Decimal("956000.00")
