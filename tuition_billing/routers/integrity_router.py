from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from tuition_billing.core.security import Principal, get_current_user, require_admin
from tuition_billing.schemas.ledger_schema import IntegrityReportOut, StatusRepairOut
from tuition_billing.services.audit import jsonable
from tuition_billing.services.integrity_auditor import scan_integrity
from tuition_billing.services.invoice_service import repair_invoice_statuses
from tuition_billing.utils.database import atomic, get_db

router = APIRouter(prefix="/integrity", tags=["Integrity"])


@router.get("/scan", response_model=IntegrityReportOut)
def scan(db: Session = Depends(get_db), _: Principal = Depends(get_current_user)):
    report = scan_integrity(db)
    return IntegrityReportOut(
        ok=report["ok"],
        issues=jsonable(report["issues"]),
        summary=report["summary"],
    )


@router.post("/repair/invoice-status", response_model=StatusRepairOut)
def repair_invoice_status(db: Session = Depends(get_db), principal: Principal = Depends(require_admin)):
    with atomic(db):
        fixed = repair_invoice_statuses(db, principal.user_id)
    return StatusRepairOut(fixed_count=len(fixed), fixed=jsonable(fixed))
