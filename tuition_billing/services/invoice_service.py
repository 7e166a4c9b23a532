"""
Invoice rows: persisting calculator snapshots, paid_amount bookkeeping,
the post-commit recompute, confirmation and the status repair tool.
"""
import logging
import uuid
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from tuition_billing.core.exceptions import NotFoundError, UpstreamFailure, ValidationError
from tuition_billing.models.invoice_model import Invoice
from tuition_billing.services.audit import record_audit
from tuition_billing.services.invoice_calculator import TuitionSnapshot, calculate_tuition
from tuition_billing.utils.database import atomic
from tuition_billing.utils.money import ZERO, money
from tuition_billing.utils.months import utc_now

logger = logging.getLogger(__name__)

CONFIRMATION_STATUSES = ("confirmed", "adjusted")


def derive_status(total_amount, paid_amount) -> str:
    paid = money(paid_amount)
    if paid == 0:
        return "draft"
    if paid >= money(total_amount):
        return "paid"
    return "partial"


def balance_of(invoice: Invoice) -> Decimal:
    """Positive = owed, negative = overpaid."""
    return money(money(invoice.total_amount) - money(invoice.paid_amount))


def find_invoice(db: Session, student_id, month: str, for_update: bool = False) -> Optional[Invoice]:
    q = db.query(Invoice).filter(Invoice.student_id == student_id, Invoice.month == month)
    if for_update:
        q = q.with_for_update()
    return q.first()


def _apply_snapshot(invoice: Invoice, snap: TuitionSnapshot):
    invoice.base_amount = snap.base_amount
    invoice.discount_amount = snap.total_discount
    invoice.total_amount = snap.total_amount
    invoice.status = derive_status(invoice.total_amount, invoice.paid_amount)


def get_or_create_invoice(db: Session, student_id: uuid.UUID, month: str) -> Invoice:
    """Locked invoice row for (student, month); created from a fresh snapshot if missing."""
    invoice = find_invoice(db, student_id, month, for_update=True)
    if invoice:
        return invoice

    snap = calculate_tuition(db, student_id, month)
    invoice = Invoice(student_id=student_id, month=month, paid_amount=ZERO)
    _apply_snapshot(invoice, snap)
    db.add(invoice)
    db.flush()
    return invoice


def apply_paid_delta(invoice: Invoice, delta) -> Invoice:
    invoice.paid_amount = max(ZERO, money(money(invoice.paid_amount) + money(delta)))
    invoice.status = derive_status(invoice.total_amount, invoice.paid_amount)
    return invoice


def refresh_invoice(db: Session, student_id: uuid.UUID, month: str) -> Invoice:
    """Recompute: persist the current snapshot, keep paid_amount. Idempotent."""
    snap = calculate_tuition(db, student_id, month)
    invoice = find_invoice(db, student_id, month, for_update=True)
    if not invoice:
        invoice = Invoice(student_id=student_id, month=month, paid_amount=ZERO)
        db.add(invoice)
    _apply_snapshot(invoice, snap)
    db.flush()
    return invoice


def recompute_after_write(db: Session, pairs: Iterable[tuple[uuid.UUID, str]]) -> list[tuple[uuid.UUID, str]]:
    """
    Runs after the ledger write has committed. Each pair gets its own
    transaction; a failure is logged and skipped. Returns the failed pairs.
    """
    failed = []
    for student_id, month in dict.fromkeys(pairs):
        try:
            with atomic(db):
                refresh_invoice(db, student_id, month)
        except Exception as e:
            failed.append((student_id, month))
            logger.exception(
                "%s",
                UpstreamFailure(f"Invoice recompute failed for {student_id} {month}: {e}"),
            )
    return failed


def confirm_invoices(
        db: Session,
        invoice_ids: list[uuid.UUID],
        confirmation_status: str,
        notes: Optional[str],
        actor_user_id: uuid.UUID,
) -> list[Invoice]:
    if confirmation_status not in CONFIRMATION_STATUSES:
        raise ValidationError(f"Invalid confirmation status: {confirmation_status}")

    invoices = db.query(Invoice).filter(Invoice.id.in_(invoice_ids)).with_for_update().all()
    found = {i.id for i in invoices}
    missing = [str(i) for i in invoice_ids if i not in found]
    if missing:
        raise NotFoundError(f"Invoice(s) not found: {', '.join(missing)}")

    now = utc_now()
    for invoice in invoices:
        invoice.confirmation_status = confirmation_status
        invoice.confirmed_at = now
        invoice.confirmed_by = actor_user_id
        invoice.confirmation_notes = notes
        record_audit(
            db,
            entity="invoice",
            entity_id=invoice.id,
            action="confirm_tuition",
            actor_user_id=actor_user_id,
            diff={
                "status": confirmation_status,
                "notes": notes,
                "invoice_month": invoice.month,
                "student_id": invoice.student_id,
            },
        )
    db.flush()
    logger.info("Confirmed %d invoices by %s", len(invoices), actor_user_id)
    return invoices


def repair_invoice_statuses(db: Session, actor_user_id: uuid.UUID) -> list[dict]:
    """Fix invoices whose stored status disagrees with paid/total."""
    fixed = []
    for invoice in db.query(Invoice).with_for_update().order_by(Invoice.month.asc()).all():
        expected = derive_status(invoice.total_amount, invoice.paid_amount)
        if invoice.status == expected:
            continue

        fixed.append(
            {
                "invoice_id": invoice.id,
                "student_id": invoice.student_id,
                "month": invoice.month,
                "old_status": invoice.status,
                "new_status": expected,
            }
        )
        record_audit(
            db,
            entity="invoice",
            entity_id=invoice.id,
            action="repair_status",
            actor_user_id=actor_user_id,
            diff={"old_status": invoice.status, "new_status": expected},
        )
        invoice.status = expected

    db.flush()
    logger.info("Invoice status repair fixed %d rows", len(fixed))
    return fixed
