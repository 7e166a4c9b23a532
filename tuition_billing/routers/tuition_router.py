from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from tuition_billing.core.exceptions import NotFoundError
from tuition_billing.core.security import Principal, get_current_user, require_admin
from tuition_billing.schemas.tuition_schema import (
    ConfirmTuitionIn,
    ConfirmTuitionResult,
    InvoiceOut,
    InvoiceSnapshotOut,
)
from tuition_billing.services.invoice_calculator import calculate_tuition
from tuition_billing.services.invoice_service import confirm_invoices, find_invoice, refresh_invoice
from tuition_billing.utils.database import atomic, get_db
from tuition_billing.utils.months import validate_month

router = APIRouter(prefix="/tuition", tags=["Tuition"])


@router.get("/invoices/{student_id}/{month}", response_model=InvoiceOut)
def get_invoice(
        student_id: UUID,
        month: str,
        db: Session = Depends(get_db),
        _: Principal = Depends(get_current_user),
):
    invoice = find_invoice(db, student_id, validate_month(month))
    if not invoice:
        raise NotFoundError("Invoice not found")
    return invoice


@router.get("/{student_id}/{month}", response_model=InvoiceSnapshotOut)
def get_tuition(
        student_id: UUID,
        month: str,
        db: Session = Depends(get_db),
        _: Principal = Depends(get_current_user),
):
    # read-only: nothing is persisted here
    snap = calculate_tuition(db, student_id, validate_month(month))
    return InvoiceSnapshotOut.from_snapshot(snap)


@router.post("/{student_id}/{month}/recompute", response_model=InvoiceOut)
def recompute_invoice(
        student_id: UUID,
        month: str,
        db: Session = Depends(get_db),
        _: Principal = Depends(require_admin),
):
    month = validate_month(month)
    with atomic(db):
        invoice = refresh_invoice(db, student_id, month)
    db.refresh(invoice)
    return invoice


@router.post("/confirm", response_model=ConfirmTuitionResult)
def confirm_tuition(
        payload: ConfirmTuitionIn,
        db: Session = Depends(get_db),
        principal: Principal = Depends(require_admin),
):
    with atomic(db):
        invoices = confirm_invoices(
            db,
            payload.invoice_ids,
            payload.confirmation_status,
            payload.notes,
            principal.user_id,
        )

    for inv in invoices:
        db.refresh(inv)

    return ConfirmTuitionResult(
        confirmed_count=len(invoices),
        invoices=[InvoiceOut.model_validate(inv) for inv in invoices],
    )
