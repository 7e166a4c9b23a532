from typing import Optional, Union
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from starlette import status

from tuition_billing.core.security import Principal, require_admin
from tuition_billing.schemas.payment_schema import (
    DeletePaymentResult,
    FamilyPaymentCreate,
    FamilyPaymentResult,
    ModifyPaymentResult,
    PaymentCreate,
    PaymentModify,
    PaymentResult,
)
from tuition_billing.services.family_payment import post_family_payment
from tuition_billing.services.payment_poster import delete_payment, modify_payment, post_payment
from tuition_billing.utils.database import get_db

router = APIRouter(prefix="/payments", tags=["Payments"])


# =================================================
# Post
# =================================================
@router.post(
    "",
    response_model=Union[PaymentResult, FamilyPaymentResult],
    status_code=status.HTTP_201_CREATED,
)
def create_payment(
        payload: PaymentCreate,
        db: Session = Depends(get_db),
        principal: Principal = Depends(require_admin),
):
    return post_payment(db, payload, principal)


@router.post("/family", response_model=FamilyPaymentResult, status_code=status.HTTP_201_CREATED)
def create_family_payment(
        payload: FamilyPaymentCreate,
        db: Session = Depends(get_db),
        principal: Principal = Depends(require_admin),
):
    return post_family_payment(db, payload, principal)


# =================================================
# Modify / Delete
# =================================================
@router.put("/{payment_id}", response_model=ModifyPaymentResult)
def update_payment(
        payment_id: UUID,
        payload: PaymentModify,
        db: Session = Depends(get_db),
        principal: Principal = Depends(require_admin),
):
    return modify_payment(db, payment_id, payload, principal)


@router.delete("/{payment_id}", response_model=DeletePaymentResult)
def remove_payment(
        payment_id: UUID,
        reason: Optional[str] = Query(None, max_length=500),
        db: Session = Depends(get_db),
        principal: Principal = Depends(require_admin),
):
    return delete_payment(db, payment_id, reason, principal)
