"""
Monthly tuition calculation.

calculate_tuition() reads sessions, attendance, discount modifiers and
earlier invoice rows and returns a snapshot; it never writes. Persisting the
snapshot as an Invoice row is up to the caller (see invoice_service.refresh_invoice).
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from tuition_billing.core.exceptions import NotFoundError
from tuition_billing.models.discount_model import (
    DiscountAssignment,
    DiscountDefinition,
    ReferralBonus as ReferralBonusRow,
    SiblingDiscountState,
)
from tuition_billing.models.invoice_model import Invoice
from tuition_billing.models.roster_model import (
    Attendance,
    ClassGroup,
    ClassSession,
    Enrollment,
    Student,
)
from tuition_billing.services.discount_rules import (
    AssignedDiscount,
    DiscountLine,
    DiscountRule,
    EnrollmentDiscount,
    ReferralBonus,
    SiblingDiscount,
    apply_rules,
)
from tuition_billing.utils.money import ZERO, money
from tuition_billing.utils.months import month_range

logger = logging.getLogger(__name__)

BILLABLE_SESSION_STATUSES = ("Scheduled", "Held")
BILLABLE_ATTENDANCE = ("Present", "Absent")


@dataclass(frozen=True)
class SessionDetail:
    session_id: uuid.UUID
    date: date
    rate: Decimal
    status: str
    attendance: str


@dataclass(frozen=True)
class SiblingStateView:
    status: str
    percent: Decimal
    reason: Optional[str]
    is_winner: bool


@dataclass(frozen=True)
class CarryView:
    """
    Balance carried across months, from earlier invoice rows.
    carry_in_* is what earlier months left; carry_out_* is what this month
    leaves once its own payments are counted.
    """

    carry_in_credit: Decimal
    carry_in_debt: Decimal
    month_paid: Decimal
    carry_out_credit: Decimal
    carry_out_debt: Decimal
    balance_status: str  # credit | debt | settled


@dataclass
class TuitionSnapshot:
    student_id: uuid.UUID
    month: str
    base_amount: Decimal
    discounts: list[DiscountLine]
    total_discount: Decimal
    total_amount: Decimal
    session_details: list[SessionDetail] = field(default_factory=list)
    sibling_state: Optional[SiblingStateView] = None
    carry: Optional[CarryView] = None

    @property
    def session_count(self) -> int:
        return len(self.session_details)


def _active_enrollments(db: Session, student_id, start: date, next_start: date) -> list[Enrollment]:
    return (
        db.query(Enrollment)
        .filter(
            Enrollment.student_id == student_id,
            or_(Enrollment.start_date.is_(None), Enrollment.start_date < next_start),
            or_(Enrollment.end_date.is_(None), Enrollment.end_date >= start),
        )
        .order_by(Enrollment.start_date.asc(), Enrollment.id.asc())
        .all()
    )


def list_billable_sessions(db: Session, student_id, class_ids, start: date, next_start: date) -> list[SessionDetail]:
    """Scheduled/Held sessions in [start, next_start) the student attended or missed (not excused)."""
    if not class_ids:
        return []

    rows = (
        db.query(ClassSession, Attendance.status, ClassGroup.session_rate)
        .join(
            Attendance,
            (Attendance.session_id == ClassSession.id) & (Attendance.student_id == student_id),
        )
        .join(ClassGroup, ClassGroup.id == ClassSession.class_id)
        .filter(
            ClassSession.class_id.in_(class_ids),
            ClassSession.date >= start,
            ClassSession.date < next_start,
            ClassSession.status.in_(BILLABLE_SESSION_STATUSES),
            Attendance.status.in_(BILLABLE_ATTENDANCE),
        )
        .order_by(ClassSession.date.asc(), ClassSession.start_time.asc(), ClassSession.id.asc())
        .all()
    )

    return [
        SessionDetail(
            session_id=s.id,
            date=s.date,
            rate=money(rate),
            status=s.status,
            attendance=att,
        )
        for s, att, rate in rows
    ]


def _effective_filter(model, start: date, next_start: date):
    return (
        model.effective_from < next_start,
        or_(model.effective_to.is_(None), model.effective_to >= start),
    )


def collect_rules(
        db: Session, student: Student, month: str, enrollments: list[Enrollment]
) -> tuple[list[DiscountRule], Optional[SiblingStateView]]:
    start, next_start = month_range(month)
    rules: list[DiscountRule] = []

    for e in enrollments:
        if not e.discount_type or not e.discount_value:
            continue
        rules.append(
            EnrollmentDiscount(
                kind=e.discount_type,
                value=money(e.discount_value),
                cadence=e.discount_cadence or "monthly",
            )
        )

    assignments = (
        db.query(DiscountAssignment)
        .join(DiscountDefinition, DiscountDefinition.id == DiscountAssignment.discount_definition_id)
        .filter(
            DiscountAssignment.student_id == student.id,
            DiscountDefinition.is_active.is_(True),
            *_effective_filter(DiscountAssignment, start, next_start),
        )
        .order_by(DiscountAssignment.effective_from.asc(), DiscountAssignment.id.asc())
        .all()
    )
    for a in assignments:
        d = a.definition
        rules.append(AssignedDiscount(name=d.name, kind=d.type, value=money(d.value)))

    bonuses = (
        db.query(ReferralBonusRow)
        .filter(
            ReferralBonusRow.student_id == student.id,
            *_effective_filter(ReferralBonusRow, start, next_start),
        )
        .order_by(ReferralBonusRow.effective_from.asc(), ReferralBonusRow.id.asc())
        .all()
    )
    for b in bonuses:
        rules.append(ReferralBonus(kind=b.type, value=money(b.value)))

    sibling_view = None
    if student.family_id:
        sd = (
            db.query(SiblingDiscountState)
            .filter(
                SiblingDiscountState.family_id == student.family_id,
                SiblingDiscountState.month == month,
            )
            .first()
        )
        if sd:
            is_winner = sd.winner_student_id == student.id
            sibling_view = SiblingStateView(
                status=sd.status,
                percent=money(sd.sibling_percent),
                reason=sd.reason,
                is_winner=is_winner,
            )
            # only the designated winner of an assigned state gets the line
            if sd.status == "assigned" and is_winner:
                rules.append(SiblingDiscount(percent=money(sd.sibling_percent)))

    return rules, sibling_view


def carry_balances(db: Session, student_id: uuid.UUID, month: str, total_amount: Decimal) -> CarryView:
    prior = (
        db.query(Invoice.total_amount, Invoice.paid_amount)
        .filter(Invoice.student_id == student_id, Invoice.month < month)
        .all()
    )
    # positive = overpaid before this month
    carry_in = money(sum((money(paid) - money(total) for total, paid in prior), ZERO))

    current = (
        db.query(Invoice.paid_amount)
        .filter(Invoice.student_id == student_id, Invoice.month == month)
        .first()
    )
    month_paid = money(current[0]) if current else ZERO

    closing_due = money(total_amount - month_paid - carry_in)
    if closing_due < 0:
        status = "credit"
    elif closing_due > 0:
        status = "debt"
    else:
        status = "settled"

    return CarryView(
        carry_in_credit=carry_in if carry_in > 0 else ZERO,
        carry_in_debt=-carry_in if carry_in < 0 else ZERO,
        month_paid=month_paid,
        carry_out_credit=-closing_due if closing_due < 0 else ZERO,
        carry_out_debt=closing_due if closing_due > 0 else ZERO,
        balance_status=status,
    )


def calculate_tuition(db: Session, student_id: uuid.UUID, month: str) -> TuitionSnapshot:
    start, next_start = month_range(month)

    student = db.query(Student).filter(Student.id == student_id).first()
    if not student:
        raise NotFoundError("Student not found")

    enrollments = _active_enrollments(db, student_id, start, next_start)
    class_ids = list(dict.fromkeys(e.class_id for e in enrollments))

    sessions = list_billable_sessions(db, student_id, class_ids, start, next_start)
    base_amount = money(sum((s.rate for s in sessions), ZERO))

    rules, sibling_view = collect_rules(db, student, month, enrollments)
    discounts, total_discount = apply_rules(base_amount, rules)
    total_discount = money(total_discount)

    total_amount = max(ZERO, money(base_amount - total_discount))

    logger.debug(
        "Tuition %s %s: base=%s discount=%s total=%s sessions=%d",
        student_id, month, base_amount, total_discount, total_amount, len(sessions),
    )

    return TuitionSnapshot(
        student_id=student_id,
        month=month,
        base_amount=base_amount,
        discounts=discounts,
        total_discount=total_discount,
        total_amount=total_amount,
        session_details=sessions,
        sibling_state=sibling_view,
        carry=carry_balances(db, student_id, month, total_amount),
    )
