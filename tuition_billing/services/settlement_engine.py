"""
Settling what is left on an invoice without a payment.

  discount                - owed balance written off:  Dr DISCOUNT / Cr AR
  voluntary_contribution  - credit kept as revenue:    Dr AR / Cr REVENUE  (consent required)
  unapplied_cash          - credit carried forward:    Dr AR / Cr CREDIT

Credit-side settlements never go through the payment path, so the credit
cannot come back as an inflated paid_amount.
"""
import logging

from sqlalchemy.orm import Session

from tuition_billing.core.exceptions import NotFoundError, StateConflictError, ValidationError
from tuition_billing.core.security import Principal, ensure_admin
from tuition_billing.models.ledger_model import ACCOUNT_CODES
from tuition_billing.models.settlement_model import Settlement
from tuition_billing.schemas.settlement_schema import SettlementCreate, SettlementResult
from tuition_billing.services import ledger_store
from tuition_billing.services.audit import record_audit
from tuition_billing.services.invoice_service import (
    apply_paid_delta,
    balance_of,
    find_invoice,
    recompute_after_write,
)
from tuition_billing.utils.database import atomic
from tuition_billing.utils.money import money
from tuition_billing.utils.months import utc_now, validate_month

logger = logging.getLogger(__name__)

# settlement_type -> (debit account, credit account, memo)
POSTINGS = {
    "discount": ("DISCOUNT", "AR", "Settlement discount"),
    "voluntary_contribution": ("AR", "REVENUE", "Voluntary contribution"),
    "unapplied_cash": ("AR", "CREDIT", "Unapplied cash carried forward"),
}


def settle_bill(db: Session, payload: SettlementCreate, principal: Principal) -> SettlementResult:
    ensure_admin(principal)
    month = validate_month(payload.month)

    if payload.settlement_type not in POSTINGS:
        raise ValidationError(f"Unknown settlement type: {payload.settlement_type}")
    if not (payload.reason or "").strip():
        raise ValidationError("A settlement reason is required")
    if payload.settlement_type == "voluntary_contribution" and not payload.consent_given:
        raise ValidationError("Consent required for voluntary contribution")

    requested = money(payload.amount)

    with atomic(db):
        invoice = find_invoice(db, payload.student_id, month, for_update=True)
        if not invoice:
            raise NotFoundError(f"Invoice not found for student {payload.student_id} in {month}")

        before = balance_of(invoice)

        if payload.settlement_type == "discount":
            if before <= 0:
                raise StateConflictError(f"Discount requires an outstanding balance (balance={before})")
            amount = min(requested, before)
        else:
            if before >= 0:
                raise StateConflictError(
                    f"{payload.settlement_type} requires a credit balance (balance={before})"
                )
            amount = min(requested, -before)

        debit_code, credit_code, memo = POSTINGS[payload.settlement_type]
        accounts = ledger_store.ensure_accounts(db, payload.student_id, ACCOUNT_CODES)

        settlement = Settlement(
            student_id=payload.student_id,
            month=month,
            settlement_type=payload.settlement_type,
            requested_amount=requested,
            amount=amount,
            reason=payload.reason.strip(),
            consent_given=payload.consent_given,
            approver_id=principal.user_id,
            approver_name=payload.approver_name,
            before_balance=before,
            after_balance=before,
        )
        db.add(settlement)
        db.flush()  # gives settlement.id

        occurred_at = utc_now()
        tx = ledger_store.post_transaction(
            db,
            [
                ledger_store.debit_leg(accounts[debit_code], amount, occurred_at, month, f"{memo}: {payload.reason}"),
                ledger_store.credit_leg(accounts[credit_code], amount, occurred_at, month, f"{memo}: {payload.reason}"),
            ],
            operation="settlement",
            source_ref=str(settlement.id),
            tx_key=f"settlement-{payload.settlement_type}-{payload.student_id}-{month}-{settlement.id}",
            created_by=principal.user_id,
        )

        # a discount counts toward paid; a settled credit is used up
        if payload.settlement_type == "discount":
            apply_paid_delta(invoice, amount)
        else:
            apply_paid_delta(invoice, -amount)

        after = balance_of(invoice)
        settlement.tx_id = tx.id
        settlement.after_balance = after

        record_audit(
            db,
            entity="settlement",
            entity_id=settlement.id,
            action=payload.settlement_type,
            actor_user_id=principal.user_id,
            diff={
                "student_id": payload.student_id,
                "month": month,
                "requested_amount": requested,
                "amount": amount,
                "before_balance": before,
                "after_balance": after,
                "consent_given": payload.consent_given,
                "approver_name": payload.approver_name,
                "tx_id": tx.id,
            },
        )

    logger.info(
        "Settled %s for student %s %s: %s (balance %s -> %s)",
        payload.settlement_type, payload.student_id, month, amount, before, after,
    )
    recompute_after_write(db, [(payload.student_id, month)])

    return SettlementResult(
        settlement_id=settlement.id,
        tx_id=tx.id,
        settlement_type=payload.settlement_type,
        requested_amount=float(requested),
        amount=float(amount),
        before_balance=float(before),
        after_balance=float(after),
    )
