"""
Read-only data integrity scan. Nothing here writes; the repair tools in
invoice_service run their own narrower queries.
"""
import logging
import re
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from tuition_billing.models.discount_model import SiblingDiscountState
from tuition_billing.models.invoice_model import Invoice
from tuition_billing.models.ledger_model import LedgerAccount, LedgerEntry, LedgerTransaction
from tuition_billing.models.payment_model import Payment
from tuition_billing.models.roster_model import (
    Attendance,
    ClassGroup,
    ClassSession,
    Enrollment,
    Student,
    Teacher,
)
from tuition_billing.models.user_model import User
from tuition_billing.services.invoice_service import derive_status
from tuition_billing.utils.money import money

logger = logging.getLogger(__name__)

CATEGORIES = (
    "enrollments_orphaned",
    "enrollments_duplicates",
    "sessions_orphaned",
    "sessions_invalid_status",
    "attendance_orphaned",
    "students_bad_link",
    "sibling_state_bad",
    "ledger_unbalanced",
    "ledger_orphaned",
    "invoices_invalid_status",
)

# a session counts as over one minute after its end time
HELD_GRACE = timedelta(minutes=1)

PAYMENT_TX_KEY_RE = re.compile(r"^payment-([0-9a-f-]{36})")


def _ids(db: Session, column) -> set:
    return {row[0] for row in db.query(column).all()}


# -------------------------------------------------
# Checks
# -------------------------------------------------
def _enrollment_issues(db: Session, student_ids: set, class_ids: set, today):
    orphaned = []
    active = defaultdict(list)

    for e in db.query(Enrollment).all():
        missing = []
        if e.student_id not in student_ids:
            missing.append("student")
        if e.class_id not in class_ids:
            missing.append("class")
        if missing:
            orphaned.append(
                {"enrollment_id": e.id, "student_id": e.student_id, "class_id": e.class_id, "missing": missing}
            )

        started = e.start_date is None or e.start_date <= today
        not_ended = e.end_date is None or e.end_date >= today
        if started and not_ended:
            active[(e.student_id, e.class_id)].append(e.id)

    duplicates = [
        {"student_id": sid, "class_id": cid, "enrollment_ids": ids, "count": len(ids)}
        for (sid, cid), ids in active.items()
        if len(ids) > 1
    ]
    return orphaned, duplicates


def _session_issues(db: Session, class_ids: set, teacher_ids: set, now: datetime):
    orphaned = []
    invalid = []
    today = now.date()

    for s in db.query(ClassSession).all():
        missing = []
        if s.class_id not in class_ids:
            missing.append("class")
        if s.teacher_id is not None and s.teacher_id not in teacher_ids:
            missing.append("teacher")
        if missing:
            orphaned.append({"session_id": s.id, "class_id": s.class_id, "teacher_id": s.teacher_id, "missing": missing})

        if s.status != "Held":
            continue
        if s.date > today:
            invalid.append({"session_id": s.id, "date": s.date, "status": s.status, "problem": "future session marked Held"})
        elif s.date == today and s.end_time is not None:
            ends_at = datetime.combine(s.date, s.end_time) + HELD_GRACE
            if now < ends_at:
                invalid.append(
                    {
                        "session_id": s.id,
                        "date": s.date,
                        "end_time": s.end_time,
                        "status": s.status,
                        "problem": "marked Held before it ended",
                    }
                )
    return orphaned, invalid


def _attendance_issues(db: Session, session_ids: set, student_ids: set):
    out = []
    for a in db.query(Attendance).all():
        missing = []
        if a.session_id not in session_ids:
            missing.append("session")
        if a.student_id not in student_ids:
            missing.append("student")
        if missing:
            out.append({"attendance_id": a.id, "session_id": a.session_id, "student_id": a.student_id, "missing": missing})
    return out


def _student_link_issues(db: Session):
    users = {u.id: u for u in db.query(User).all()}
    out = []
    for s in db.query(Student).filter(Student.linked_user_id.isnot(None)).all():
        user = users.get(s.linked_user_id)
        if user is None:
            out.append({"student_id": s.id, "linked_user_id": s.linked_user_id, "problem": "user missing"})
        elif user.deleted_at is not None:
            out.append({"student_id": s.id, "linked_user_id": s.linked_user_id, "problem": "user deleted"})
    return out


def _sibling_state_issues(db: Session):
    families = defaultdict(set)
    for sid, fid in db.query(Student.id, Student.family_id).filter(Student.family_id.isnot(None)).all():
        families[fid].add(sid)

    out = []
    for st in db.query(SiblingDiscountState).filter(SiblingDiscountState.status == "assigned").all():
        if st.winner_student_id is None:
            problem = "assigned without a winner"
        elif st.winner_student_id not in families.get(st.family_id, set()):
            problem = "winner is not a student of the family"
        else:
            continue
        out.append(
            {
                "state_id": st.id,
                "family_id": st.family_id,
                "month": st.month,
                "winner_student_id": st.winner_student_id,
                "problem": problem,
            }
        )
    return out


def _ledger_issues(db: Session):
    rows = (
        db.query(
            LedgerAccount.student_id,
            func.coalesce(func.sum(LedgerEntry.debit), 0),
            func.coalesce(func.sum(LedgerEntry.credit), 0),
        )
        .join(LedgerEntry, LedgerEntry.account_id == LedgerAccount.id)
        .group_by(LedgerAccount.student_id)
        .all()
    )
    out = []
    for student_id, debit, credit in rows:
        diff = money(money(debit) - money(credit))
        if diff != 0:
            out.append(
                {
                    "student_id": student_id,
                    "total_debit": money(debit),
                    "total_credit": money(credit),
                    "diff": diff,
                }
            )
    return out


def _orphaned_ledger_issues(db: Session):
    """Payment entries whose payment row is gone without a deletion reversal."""
    existing = {str(pid) for pid in _ids(db, Payment.id)}
    deleted = {
        ref.split(":", 1)[0]
        for (ref,) in db.query(LedgerTransaction.source_ref)
        .filter(LedgerTransaction.operation == "payment_deletion")
        .all()
    }

    out = []
    entries = (
        db.query(LedgerEntry)
        .filter(LedgerEntry.tx_key.like("payment-%"))
        .order_by(LedgerEntry.occurred_at.asc())
        .all()
    )
    for e in entries:
        match = PAYMENT_TX_KEY_RE.match(e.tx_key)
        if not match:
            continue
        payment_id = match.group(1)
        if payment_id in existing or payment_id in deleted:
            continue
        out.append(
            {
                "entry_id": e.id,
                "tx_key": e.tx_key,
                "payment_id": payment_id,
                "student_id": e.account.student_id,
                "month": e.month,
            }
        )
    return out

def _invoice_status_issues(db: Session):
    out = []
    for inv in db.query(Invoice).order_by(Invoice.month.asc()).all():
        expected = derive_status(inv.total_amount, inv.paid_amount)
        if inv.status != expected:
            out.append(
                {
                    "invoice_id": inv.id,
                    "student_id": inv.student_id,
                    "month": inv.month,
                    "status": inv.status,
                    "expected_status": expected,
                }
            )
    return out


# -------------------------------------------------
# Scan
# -------------------------------------------------
def scan_integrity(db: Session, now: Optional[datetime] = None) -> dict:
    now = now or datetime.now()  # session dates and times are local wall clock

    student_ids = _ids(db, Student.id)
    class_ids = _ids(db, ClassGroup.id)
    teacher_ids = _ids(db, Teacher.id)
    session_ids = _ids(db, ClassSession.id)

    issues = {}
    issues["enrollments_orphaned"], issues["enrollments_duplicates"] = _enrollment_issues(
        db, student_ids, class_ids, now.date()
    )
    issues["sessions_orphaned"], issues["sessions_invalid_status"] = _session_issues(
        db, class_ids, teacher_ids, now
    )
    issues["attendance_orphaned"] = _attendance_issues(db, session_ids, student_ids)
    issues["students_bad_link"] = _student_link_issues(db)
    issues["sibling_state_bad"] = _sibling_state_issues(db)
    issues["ledger_unbalanced"] = _ledger_issues(db)
    issues["ledger_orphaned"] = _orphaned_ledger_issues(db)
    issues["invoices_invalid_status"] = _invoice_status_issues(db)

    summary = {c: len(issues[c]) for c in CATEGORIES}
    total = sum(summary.values())
    if total:
        logger.warning("Integrity scan found %d issue(s): %s", total, {k: v for k, v in summary.items() if v})
    else:
        logger.info("Integrity scan clean")

    return {"ok": total == 0, "issues": {c: issues[c] for c in CATEGORIES}, "summary": summary}
