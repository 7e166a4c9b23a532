from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from tuition_billing.core.security import Principal, get_current_user
from tuition_billing.schemas.ledger_schema import AccountBalanceOut, LedgerRowOut, StudentBalancesOut
from tuition_billing.services.ledger_store import account_balances, student_statement
from tuition_billing.utils.database import get_db
from tuition_billing.utils.money import ZERO, money
from tuition_billing.utils.months import validate_month

router = APIRouter(prefix="/ledger", tags=["Ledger"])


@router.get("/{student_id}/balances", response_model=StudentBalancesOut)
def get_balances(
        student_id: UUID,
        db: Session = Depends(get_db),
        _: Principal = Depends(get_current_user),
):
    rows = account_balances(db, student_id)
    total_debit = money(sum((r["total_debit"] for r in rows), ZERO))
    total_credit = money(sum((r["total_credit"] for r in rows), ZERO))

    return StudentBalancesOut(
        student_id=student_id,
        accounts=[
            AccountBalanceOut(
                code=r["code"],
                total_debit=float(r["total_debit"]),
                total_credit=float(r["total_credit"]),
                balance=float(r["balance"]),
            )
            for r in rows
        ],
        total_debit=float(total_debit),
        total_credit=float(total_credit),
        is_balanced=total_debit == total_credit,
    )


@router.get("/{student_id}/statement", response_model=List[LedgerRowOut])
def get_statement(
        student_id: UUID,
        month: Optional[str] = Query(None),
        db: Session = Depends(get_db),
        _: Principal = Depends(get_current_user),
):
    if month:
        validate_month(month)

    return [
        LedgerRowOut(
            id=e.id,
            tx_id=e.tx_id,
            tx_key=e.tx_key,
            account_code=e.account.code,
            debit=float(e.debit),
            credit=float(e.credit),
            occurred_at=e.occurred_at,
            month=e.month,
            memo=e.memo,
        )
        for e in student_statement(db, student_id, month)
    ]
