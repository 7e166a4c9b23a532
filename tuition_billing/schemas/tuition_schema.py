from datetime import date, datetime
from typing import Optional, List, Literal
from uuid import UUID

from pydantic import BaseModel, Field

from tuition_billing.services.invoice_calculator import TuitionSnapshot


class DiscountLineOut(BaseModel):
    name: str
    type: str
    value: float
    amount: float
    is_sibling_winner: bool = False


class SessionDetailOut(BaseModel):
    session_id: UUID
    date: date
    rate: float
    status: str
    attendance: str


class SiblingStateOut(BaseModel):
    status: str
    percent: float
    reason: Optional[str] = None
    is_winner: bool


class CarryOut(BaseModel):
    carry_in_credit: float
    carry_in_debt: float
    month_paid: float
    carry_out_credit: float
    carry_out_debt: float
    balance_status: Literal["credit", "debt", "settled"]


class InvoiceSnapshotOut(BaseModel):
    student_id: UUID
    month: str
    session_count: int
    session_details: List[SessionDetailOut]
    base_amount: float
    discounts: List[DiscountLineOut]
    total_discount: float
    total_amount: float
    sibling_state: Optional[SiblingStateOut] = None
    carry: Optional[CarryOut] = None

    @classmethod
    def from_snapshot(cls, snap: TuitionSnapshot) -> "InvoiceSnapshotOut":
        return cls(
            student_id=snap.student_id,
            month=snap.month,
            session_count=snap.session_count,
            session_details=[
                SessionDetailOut(
                    session_id=s.session_id,
                    date=s.date,
                    rate=float(s.rate),
                    status=s.status,
                    attendance=s.attendance,
                )
                for s in snap.session_details
            ],
            base_amount=float(snap.base_amount),
            discounts=[
                DiscountLineOut(
                    name=d.name,
                    type=d.type,
                    value=float(d.value),
                    amount=float(d.amount),
                    is_sibling_winner=d.is_sibling_winner,
                )
                for d in snap.discounts
            ],
            total_discount=float(snap.total_discount),
            total_amount=float(snap.total_amount),
            sibling_state=(
                SiblingStateOut(
                    status=snap.sibling_state.status,
                    percent=float(snap.sibling_state.percent),
                    reason=snap.sibling_state.reason,
                    is_winner=snap.sibling_state.is_winner,
                )
                if snap.sibling_state
                else None
            ),
            carry=(
                CarryOut(
                    carry_in_credit=float(snap.carry.carry_in_credit),
                    carry_in_debt=float(snap.carry.carry_in_debt),
                    month_paid=float(snap.carry.month_paid),
                    carry_out_credit=float(snap.carry.carry_out_credit),
                    carry_out_debt=float(snap.carry.carry_out_debt),
                    balance_status=snap.carry.balance_status,
                )
                if snap.carry
                else None
            ),
        )


class InvoiceOut(BaseModel):
    id: UUID
    student_id: UUID
    month: str

    base_amount: float
    discount_amount: float
    total_amount: float
    paid_amount: float

    status: str
    confirmation_status: str
    confirmed_at: Optional[datetime] = None
    confirmation_notes: Optional[str] = None

    class Config:
        from_attributes = True


class ConfirmTuitionIn(BaseModel):
    invoice_ids: List[UUID] = Field(min_length=1)
    notes: Optional[str] = Field(None, max_length=500)
    confirmation_status: Literal["confirmed", "adjusted"] = "confirmed"


class ConfirmTuitionResult(BaseModel):
    confirmed_count: int
    invoices: List[InvoiceOut]
