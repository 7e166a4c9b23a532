"""
One payment from a family, split across siblings.

Allocation modes:
  oldest_first  - waterfall over open invoices, oldest month first
  pro_rata      - by each student's outstanding balance
  manual        - caller-provided amounts, capped by what is left

Whatever is not allocated is credited to the first selected student's
payment-month invoice; with leftover_handling it is then settled as a
voluntary contribution (consent required) or carried as customer credit.
"""
import logging
import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from tuition_billing.core.exceptions import NotFoundError, ValidationError
from tuition_billing.core.security import Principal, ensure_admin
from tuition_billing.models.invoice_model import Invoice
from tuition_billing.models.ledger_model import ACCOUNT_CODES
from tuition_billing.models.payment_model import Payment, PaymentAllocation
from tuition_billing.models.roster_model import Family, Student
from tuition_billing.models.settlement_model import Settlement
from tuition_billing.schemas.payment_schema import (
    AllocationOut,
    FamilyPaymentCreate,
    FamilyPaymentResult,
    ManualAllocation,
    PaymentCreate,
)
from tuition_billing.services import ledger_store
from tuition_billing.services.audit import record_audit
from tuition_billing.services.invoice_service import (
    apply_paid_delta,
    balance_of,
    get_or_create_invoice,
    recompute_after_write,
)
from tuition_billing.services.payment_poster import (
    cash_account_code,
    find_by_request_key,
    payment_tx_key,
)
from tuition_billing.utils.database import atomic
from tuition_billing.utils.money import ZERO, money, vnd
from tuition_billing.utils.months import month_of, utc_now

logger = logging.getLogger(__name__)


def open_invoices(db: Session, student_ids: list[uuid.UUID]) -> list[Invoice]:
    """Unpaid invoices with something still owed, oldest month first."""
    rows = (
        db.query(Invoice)
        .filter(Invoice.student_id.in_(student_ids), Invoice.status != "paid")
        .order_by(Invoice.month.asc())
        .with_for_update()
        .all()
    )
    order = {sid: i for i, sid in enumerate(student_ids)}
    rows.sort(key=lambda inv: (inv.month, order.get(inv.student_id, len(order))))
    return [inv for inv in rows if balance_of(inv) > 0]


def plan_allocations(
        mode: str,
        amount: Decimal,
        student_ids: list[uuid.UUID],
        invoices: list[Invoice],
        manual: Optional[list[ManualAllocation]] = None,
) -> tuple[list[tuple[uuid.UUID, Decimal]], Decimal]:
    """
    Returns ([(student_id, allocated)], remaining). Pure: reads balances, writes nothing.
    """
    remaining = money(amount)
    allocated: dict[uuid.UUID, Decimal] = {}

    if mode == "manual":
        if not manual:
            raise ValidationError("manual_allocations are required for manual allocation")
        for m in manual:
            if m.student_id not in student_ids:
                raise ValidationError(f"Student {m.student_id} is not part of this payment")
            if remaining <= 0:
                break
            applied = min(money(m.amount), remaining)
            if applied > 0:
                allocated[m.student_id] = money(allocated.get(m.student_id, ZERO) + applied)
                remaining = money(remaining - applied)

    elif mode == "pro_rata":
        owed: dict[uuid.UUID, Decimal] = {}
        for inv in invoices:
            owed[inv.student_id] = money(owed.get(inv.student_id, ZERO) + balance_of(inv))

        total_owed = money(sum(owed.values(), ZERO))
        if total_owed > 0:
            for sid in student_ids:
                if remaining <= 0:
                    break
                student_owed = owed.get(sid, ZERO)
                if student_owed <= 0:
                    continue
                share = vnd(student_owed / total_owed * money(amount))
                applied = min(share, remaining, student_owed)
                if applied > 0:
                    allocated[sid] = applied
                    remaining = money(remaining - applied)

    else:
        for inv in invoices:
            if remaining <= 0:
                break
            applied = min(balance_of(inv), remaining)
            allocated[inv.student_id] = money(allocated.get(inv.student_id, ZERO) + applied)
            remaining = money(remaining - applied)

    return list(allocated.items()), remaining


def _post_allocation(
        db: Session,
        payment: Payment,
        student_id: uuid.UUID,
        amount: Decimal,
        invoices: list[Invoice],
        actor_user_id: uuid.UUID,
        label: str,
        leftover: Decimal = ZERO,
):
    """
    Dr CASH|BANK for allocation + leftover (payment month); Cr AR per invoice
    month the allocation pays down; residue and leftover go to the
    payment-month invoice.
    """
    accounts = ledger_store.ensure_accounts(db, student_id, ACCOUNT_CODES)
    month = month_of(payment.occurred_at)
    at = payment.occurred_at

    cash = money(amount + leftover)
    legs = [ledger_store.debit_leg(accounts[cash_account_code(payment.method)], cash, at, month, label)]

    left = money(amount)
    for inv in invoices:
        if left <= 0:
            break
        owed = balance_of(inv)
        if owed <= 0:
            continue
        applied = min(owed, left)
        legs.append(ledger_store.credit_leg(accounts["AR"], applied, at, inv.month, "Family payment allocation"))
        apply_paid_delta(inv, applied)
        left = money(left - applied)

    left = money(left + leftover)
    if left > 0:
        inv = get_or_create_invoice(db, student_id, month)
        legs.append(ledger_store.credit_leg(accounts["AR"], left, at, month, "Family payment allocation"))
        apply_paid_delta(inv, left)

    ledger_store.post_transaction(
        db,
        legs,
        operation="payment",
        source_ref=f"{payment.id}:{student_id}",
        tx_key=payment_tx_key(payment.id, student_id),
        created_by=actor_user_id,
    )
    return {inv.month for inv in invoices} | {month}


def _settle_leftover(
        db: Session,
        payment: Payment,
        student_id: uuid.UUID,
        leftover: Decimal,
        handling: str,
        consent_given: bool,
        actor_user_id: uuid.UUID,
):
    """Turn the leftover credit into a contribution (REVENUE) or carried credit (CREDIT)."""
    accounts = ledger_store.ensure_accounts(db, student_id, ACCOUNT_CODES)
    month = month_of(payment.occurred_at)
    invoice = get_or_create_invoice(db, student_id, month)
    before = balance_of(invoice)

    target = "REVENUE" if handling == "voluntary_contribution" else "CREDIT"
    memo = (
        "Voluntary contribution from family payment"
        if handling == "voluntary_contribution"
        else "Unapplied cash from family payment"
    )
    tx = ledger_store.post_transaction(
        db,
        [
            ledger_store.debit_leg(accounts["AR"], leftover, payment.occurred_at, month, memo),
            ledger_store.credit_leg(accounts[target], leftover, payment.occurred_at, month, memo),
        ],
        operation="family_leftover",
        source_ref=str(payment.id),
        # same prefix as the payment legs, so deleting the payment reverses this too
        tx_key=f"{payment_tx_key(payment.id, student_id)}-leftover",
        created_by=actor_user_id,
    )
    apply_paid_delta(invoice, -leftover)

    db.add(
        Settlement(
            student_id=student_id,
            month=month,
            settlement_type=handling,
            requested_amount=leftover,
            amount=leftover,
            reason=f"Leftover of family payment {payment.id}",
            consent_given=consent_given,
            approver_id=actor_user_id,
            tx_id=tx.id,
            before_balance=before,
            after_balance=balance_of(invoice),
        )
    )


def post_family_payment(db: Session, payload: FamilyPaymentCreate, principal: Principal) -> FamilyPaymentResult:
    ensure_admin(principal)

    existing = find_by_request_key(db, payload.request_key)
    if existing:
        return FamilyPaymentResult(
            payment_id=existing.id,
            month=month_of(existing.occurred_at),
            allocations=[
                AllocationOut(student_id=a.student_id, amount=float(a.allocated_amount))
                for a in existing.allocations
            ],
            leftover_amount=0.0,
        )

    family = db.query(Family).filter(Family.id == payload.family_id).first()
    if not family:
        raise NotFoundError("Family not found")

    student_ids = list(dict.fromkeys(payload.student_ids))
    members = {s.id for s in family.students}
    outsiders = [str(s) for s in student_ids if s not in members]
    if outsiders:
        raise ValidationError(f"Students not in family: {', '.join(outsiders)}")

    if payload.leftover_handling == "voluntary_contribution" and not payload.consent_given:
        raise ValidationError("Consent required for voluntary contribution")

    amount = money(payload.amount)
    occurred_at = payload.occurred_at or utc_now()
    month = month_of(occurred_at)
    primary = student_ids[0]

    logger.info(
        "Processing family payment: family=%s amount=%s mode=%s",
        family.id, amount, payload.allocation_mode,
    )

    with atomic(db):
        invoices = open_invoices(db, student_ids)
        plan, leftover = plan_allocations(
            payload.allocation_mode, amount, student_ids, invoices, payload.manual_allocations
        )

        # unallocated money still arrived: it lands on the primary student
        if leftover > 0 and primary not in dict(plan):
            plan.append((primary, ZERO))

        payment = Payment(
            family_id=family.id,
            amount=amount,
            method=payload.method,
            occurred_at=occurred_at,
            memo=payload.memo or f"Family payment for {len(student_ids)} students",
            request_key=payload.request_key,
            created_by=principal.user_id,
        )
        db.add(payment)
        db.flush()

        pairs = []
        received = []
        for order, (sid, alloc_amount) in enumerate(plan, start=1):
            extra = leftover if sid == primary else ZERO
            received.append((sid, money(alloc_amount + extra)))
            db.add(
                PaymentAllocation(
                    payment_id=payment.id,
                    student_id=sid,
                    allocated_amount=money(alloc_amount + extra),
                    allocation_order=order,
                )
            )
            student_invoices = [inv for inv in invoices if inv.student_id == sid]
            months = _post_allocation(
                db,
                payment,
                sid,
                alloc_amount,
                student_invoices,
                principal.user_id,
                f"Family payment allocation ({order}/{len(plan)})",
                leftover=extra,
            )
            pairs.extend((sid, m) for m in sorted(months))

        if leftover > 0 and payload.leftover_handling:
            _settle_leftover(
                db, payment, primary, leftover, payload.leftover_handling,
                payload.consent_given, principal.user_id,
            )

        record_audit(
            db,
            entity="payment",
            entity_id=payment.id,
            action="create_family",
            actor_user_id=principal.user_id,
            diff={
                "family_id": family.id,
                "amount": amount,
                "allocation_mode": payload.allocation_mode,
                "allocations": [{"student_id": s, "amount": a} for s, a in received],
                "leftover": leftover,
                "leftover_handling": payload.leftover_handling,
            },
        )

    recompute_after_write(db, pairs)

    return FamilyPaymentResult(
        payment_id=payment.id,
        month=month,
        allocations=[AllocationOut(student_id=s, amount=float(a)) for s, a in received],
        leftover_amount=float(leftover),
        leftover_handling=payload.leftover_handling if leftover > 0 else None,
    )


def post_default_family_payment(db: Session, payload: PaymentCreate, principal: Principal) -> FamilyPaymentResult:
    """postPayment with a family id: oldest-first across the family's active students."""
    students = (
        db.query(Student)
        .filter(Student.family_id == payload.family_id, Student.is_active.is_(True))
        .order_by(Student.full_name.asc())
        .all()
    )
    if not students:
        raise NotFoundError("Family has no active students")

    return post_family_payment(
        db,
        FamilyPaymentCreate(
            family_id=payload.family_id,
            student_ids=[s.id for s in students],
            amount=payload.amount,
            method=payload.method,
            occurred_at=payload.occurred_at,
            memo=payload.memo,
            request_key=payload.request_key,
        ),
        principal,
    )
