"""
Posting, modifying and deleting payments.

Nothing is edited in place. A modification posts a reversal of the original
entries (dated at the original payment) plus a fresh posting of the
corrected values; a deletion posts a reversal dated now, snapshots the
payment into payment_deletions and then removes the row.

Every ledger leg of a payment carries tx_key "payment-{paymentId}-{studentId}",
which is how reversals find what to invert.
"""
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from tuition_billing.core.exceptions import NotFoundError, StateConflictError, ValidationError
from tuition_billing.core.security import Principal, ensure_admin
from tuition_billing.models.ledger_model import ACCOUNT_CODES, LedgerTransaction
from tuition_billing.models.payment_model import (
    Payment,
    PaymentDeletion,
    PaymentModification,
)
from tuition_billing.models.roster_model import Student
from tuition_billing.schemas.payment_schema import (
    DeletePaymentResult,
    ModifyPaymentResult,
    PaymentCreate,
    PaymentResult,
)
from tuition_billing.services import ledger_store
from tuition_billing.services.audit import jsonable, record_audit
from tuition_billing.services.invoice_service import (
    apply_paid_delta,
    find_invoice,
    get_or_create_invoice,
    recompute_after_write,
)
from tuition_billing.utils.database import atomic
from tuition_billing.utils.money import money
from tuition_billing.utils.months import month_of, utc_now

logger = logging.getLogger(__name__)

REVERSING_OPERATIONS = ("payment_reversal", "payment_deletion")


# -------------------------------------------------
# Helpers
# -------------------------------------------------
def cash_account_code(method: str) -> str:
    return "CASH" if method == "cash" else "BANK"


def payment_tx_prefix(payment_id) -> str:
    return f"payment-{payment_id}"


def payment_tx_key(payment_id, student_id) -> str:
    return f"{payment_tx_prefix(payment_id)}-{student_id}"


def require_reason(reason: Optional[str], what: str = "reason") -> str:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError(f"A {what} is required")
    return reason


def payment_snapshot(payment: Payment) -> dict:
    return jsonable(
        {
            "id": payment.id,
            "student_id": payment.student_id,
            "family_id": payment.family_id,
            "amount": payment.amount,
            "method": payment.method,
            "occurred_at": payment.occurred_at,
            "memo": payment.memo,
            "parent_payment_id": payment.parent_payment_id,
            "created_by": payment.created_by,
            "created_on": payment.created_on,
            "allocations": [
                {
                    "student_id": a.student_id,
                    "allocated_amount": a.allocated_amount,
                    "allocation_order": a.allocation_order,
                }
                for a in payment.allocations
            ],
        }
    )


def load_payment(db: Session, payment_id: uuid.UUID) -> Payment:
    payment = db.query(Payment).filter(Payment.id == payment_id).with_for_update().first()
    if not payment:
        raise NotFoundError("Payment not found")
    return payment


def ensure_reversible(db: Session, payment: Payment):
    if money(payment.amount) < 0:
        raise StateConflictError("Reversal payments cannot be modified or deleted")

    reversed_tx = (
        db.query(LedgerTransaction)
        .filter(
            LedgerTransaction.operation.in_(REVERSING_OPERATIONS),
            LedgerTransaction.source_ref.like(f"{payment.id}:%"),
        )
        .first()
    )
    if reversed_tx:
        raise StateConflictError("Payment has already been reversed")


def find_by_request_key(db: Session, request_key: Optional[str]) -> Optional[Payment]:
    if not request_key:
        return None
    return db.query(Payment).filter(Payment.request_key == request_key).first()


def post_student_payment(
        db: Session,
        payment: Payment,
        student_id: uuid.UUID,
        amount: Decimal,
        actor_user_id: Optional[uuid.UUID],
) -> LedgerTransaction:
    """Dr CASH|BANK / Cr AR for one student, applied to the payment month's invoice."""
    accounts = ledger_store.ensure_accounts(db, student_id, ACCOUNT_CODES)
    month = month_of(payment.occurred_at)
    invoice = get_or_create_invoice(db, student_id, month)

    memo = payment.memo or f"Payment received via {payment.method}"
    legs = [
        ledger_store.debit_leg(accounts[cash_account_code(payment.method)], amount, payment.occurred_at, month, memo),
        ledger_store.credit_leg(accounts["AR"], amount, payment.occurred_at, month, memo),
    ]
    tx = ledger_store.post_transaction(
        db,
        legs,
        operation="payment",
        source_ref=f"{payment.id}:{student_id}",
        tx_key=payment_tx_key(payment.id, student_id),
        created_by=actor_user_id,
    )

    apply_paid_delta(invoice, amount)
    return tx


def reverse_payment_entries(
        db: Session,
        payment: Payment,
        student_ids: list[uuid.UUID],
        *,
        operation: str,
        tx_key_prefix: str,
        memo: str,
        occurred_at: Optional[datetime],
        actor_user_id: Optional[uuid.UUID],
) -> tuple[list[uuid.UUID], list[tuple[uuid.UUID, str]]]:
    """
    Invert every entry tagged to the payment, one transaction per student,
    and take the net AR credit back off each (student, month) invoice.
    occurred_at=None keeps each entry's own date.
    Returns (reversal tx ids, affected (student, month) pairs).
    """
    tx_ids = []
    pairs = []

    for student_id in student_ids:
        entries = ledger_store.find_entries_by_tx_key_prefix(db, payment_tx_prefix(payment.id), student_id)
        if not entries:
            logger.info("No ledger entries for payment %s / student %s", payment.id, student_id)
            continue

        for month, net_credit in ledger_store.net_ar_credit_by_month(entries).items():
            pairs.append((student_id, month))
            if net_credit == 0:
                continue
            invoice = find_invoice(db, student_id, month, for_update=True)
            if invoice:
                old_paid = invoice.paid_amount
                apply_paid_delta(invoice, -net_credit)
                logger.info(
                    "Reverting invoice %s: %s -> %s (%s)",
                    invoice.id, old_paid, invoice.paid_amount, invoice.status,
                )

        for e in entries:
            if (student_id, e.month) not in pairs:
                pairs.append((student_id, e.month))

        tx = ledger_store.post_transaction(
            db,
            ledger_store.reversal_legs(entries, memo, occurred_at),
            operation=operation,
            source_ref=f"{payment.id}:{student_id}",
            tx_key=f"{tx_key_prefix}-{student_id}",
            created_by=actor_user_id,
        )
        tx_ids.append(tx.id)

    return tx_ids, pairs


def payment_students(payment: Payment) -> list[uuid.UUID]:
    if payment.family_id and payment.allocations:
        return list(dict.fromkeys(a.student_id for a in payment.allocations))
    return [payment.student_id] if payment.student_id else []


def _unique(values) -> list:
    return list(dict.fromkeys(values))


# -------------------------------------------------
# Post
# -------------------------------------------------
def post_payment(db: Session, payload: PaymentCreate, principal: Principal):
    ensure_admin(principal)

    if payload.family_id is not None:
        from tuition_billing.services.family_payment import post_default_family_payment

        return post_default_family_payment(db, payload, principal)

    existing = find_by_request_key(db, payload.request_key)
    if existing:
        logger.info("Payment request %s already posted as %s", payload.request_key, existing.id)
        return PaymentResult(
            payment_id=existing.id,
            month=month_of(existing.occurred_at),
            amount=float(existing.amount),
            student_ids=payment_students(existing),
        )

    student = db.query(Student).filter(Student.id == payload.student_id).first()
    if not student:
        raise NotFoundError("Student not found")

    amount = money(payload.amount)
    occurred_at = payload.occurred_at or utc_now()
    month = month_of(occurred_at)

    logger.info("Posting payment: student=%s amount=%s method=%s", student.id, amount, payload.method)

    with atomic(db):
        payment = Payment(
            student_id=student.id,
            amount=amount,
            method=payload.method,
            occurred_at=occurred_at,
            memo=payload.memo,
            request_key=payload.request_key,
            created_by=principal.user_id,
        )
        db.add(payment)
        db.flush()  # gives payment.id

        tx = post_student_payment(db, payment, student.id, amount, principal.user_id)

        record_audit(
            db,
            entity="payment",
            entity_id=payment.id,
            action="create",
            actor_user_id=principal.user_id,
            diff={"student_id": student.id, "amount": amount, "method": payload.method, "tx_id": tx.id},
        )

    recompute_after_write(db, [(student.id, month)])

    return PaymentResult(payment_id=payment.id, month=month, amount=float(amount), student_ids=[student.id])


# -------------------------------------------------
# Modify = reverse + repost
# -------------------------------------------------
def modify_payment(db: Session, payment_id: uuid.UUID, payload, principal: Principal) -> ModifyPaymentResult:
    ensure_admin(principal)
    reason = require_reason(payload.reason, "modification reason")

    new_student = db.query(Student).filter(Student.id == payload.student_id).first()
    if not new_student:
        raise NotFoundError("Student not found")

    new_amount = money(payload.amount)
    logger.info("Modifying payment %s: amount=%s method=%s", payment_id, new_amount, payload.method)

    with atomic(db):
        original = load_payment(db, payment_id)
        ensure_reversible(db, original)

        before_data = payment_snapshot(original)
        original_students = payment_students(original)

        reversal = Payment(
            student_id=original.student_id,
            family_id=original.family_id,
            amount=-money(original.amount),
            method=original.method,
            occurred_at=original.occurred_at,
            memo=f"Reversal of payment {original.id}",
            parent_payment_id=original.id,
            created_by=principal.user_id,
        )
        db.add(reversal)
        db.flush()

        # dated at the original payment, not today
        reversal_tx_ids, reversed_pairs = reverse_payment_entries(
            db,
            original,
            original_students,
            operation="payment_reversal",
            tx_key_prefix=f"reversal-{original.id}",
            memo=f"Reversal: {reason}",
            occurred_at=None,
            actor_user_id=principal.user_id,
        )
        if not reversal_tx_ids:
            raise StateConflictError("Original payment has no ledger entries to reverse")

        new_payment = Payment(
            student_id=new_student.id,
            amount=new_amount,
            method=payload.method,
            occurred_at=payload.occurred_at,
            memo=payload.memo or f"Modified payment - {reason}",
            parent_payment_id=original.id,
            created_by=principal.user_id,
        )
        db.add(new_payment)
        db.flush()

        new_tx = post_student_payment(db, new_payment, new_student.id, new_amount, principal.user_id)
        new_month = month_of(payload.occurred_at)

        after_data = jsonable(
            {
                "student_id": new_student.id,
                "amount": new_amount,
                "method": payload.method,
                "occurred_at": payload.occurred_at,
                "memo": payload.memo,
            }
        )
        db.add(
            PaymentModification(
                original_payment_id=original.id,
                reversal_payment_id=reversal.id,
                new_payment_id=new_payment.id,
                reason=reason,
                before_data=before_data,
                after_data=after_data,
                created_by=principal.user_id,
            )
        )
        record_audit(
            db,
            entity="payment",
            entity_id=original.id,
            action="modify",
            actor_user_id=principal.user_id,
            diff={
                "reason": reason,
                "before": before_data,
                "after": after_data,
                "reversal_tx_ids": reversal_tx_ids,
                "new_tx_id": new_tx.id,
            },
        )

    affected_students = _unique([s for s, _ in reversed_pairs] + [new_student.id])
    affected_months = _unique([m for _, m in reversed_pairs] + [new_month])

    recompute_after_write(db, reversed_pairs + [(new_student.id, new_month)])

    return ModifyPaymentResult(
        reversal_payment_id=reversal.id,
        new_payment_id=new_payment.id,
        affected_months=affected_months,
        affected_students=affected_students,
    )


# -------------------------------------------------
# Delete = reverse (dated now) + snapshot + remove
# -------------------------------------------------
def delete_payment(
        db: Session, payment_id: uuid.UUID, delete_reason: Optional[str], principal: Principal
) -> DeletePaymentResult:
    ensure_admin(principal)
    reason = require_reason(delete_reason, "deletion reason")

    logger.info("Deleting payment %s", payment_id)

    with atomic(db):
        payment = load_payment(db, payment_id)
        ensure_reversible(db, payment)

        students = payment_students(payment)
        now = utc_now()

        reversal_tx_ids, pairs = reverse_payment_entries(
            db,
            payment,
            students,
            operation="payment_deletion",
            tx_key_prefix=f"deletion-{payment.id}",
            memo=f"Reversal of deleted payment: {reason}",
            occurred_at=now,
            actor_user_id=principal.user_id,
        )

        affected_students = _unique(students)
        affected_months = _unique(m for _, m in pairs)

        snapshot = {
            "payment_data": payment_snapshot(payment),
            "reversal_tx_ids": jsonable(reversal_tx_ids),
            "affected_students": jsonable(affected_students),
            "affected_months": affected_months,
            "deleted_by": str(principal.user_id),
            "deleted_at": now.isoformat(),
            "deletion_reason": reason,
        }
        db.add(
            PaymentDeletion(
                payment_id=payment.id,
                snapshot=snapshot,
                deletion_reason=reason,
                deleted_by=principal.user_id,
            )
        )
        db.flush()  # snapshot lands before the row goes

        db.delete(payment)  # allocations cascade

        record_audit(
            db,
            entity="payment",
            entity_id=payment_id,
            action="delete",
            actor_user_id=principal.user_id,
            diff={
                "reason": reason,
                "affected_students": affected_students,
                "affected_months": affected_months,
                "reversal_tx_ids": reversal_tx_ids,
            },
        )

    recompute_after_write(db, pairs)
    logger.info("Deleted payment %s (%d reversal tx)", payment_id, len(reversal_tx_ids))

    return DeletePaymentResult(
        payment_id=payment_id,
        affected_students=affected_students,
        affected_months=affected_months,
        reversal_tx_count=len(reversal_tx_ids),
    )
