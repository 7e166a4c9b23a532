from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from starlette import status

from tuition_billing.core.security import Principal, require_admin
from tuition_billing.schemas.settlement_schema import SettlementCreate, SettlementResult
from tuition_billing.services.settlement_engine import settle_bill
from tuition_billing.utils.database import get_db

router = APIRouter(prefix="/settlements", tags=["Settlements"])


@router.post("", response_model=SettlementResult, status_code=status.HTTP_201_CREATED)
def create_settlement(
        payload: SettlementCreate,
        db: Session = Depends(get_db),
        principal: Principal = Depends(require_admin),
):
    return settle_bill(db, payload, principal)
