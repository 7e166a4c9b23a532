from datetime import datetime, timezone
from typing import Optional, List, Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

PaymentMethod = Literal["cash", "bank_transfer", "card", "other"]
AllocationMode = Literal["oldest_first", "pro_rata", "manual"]
LeftoverHandling = Literal["voluntary_contribution", "unapplied_cash"]

MAX_PAYMENT = 100_000_000


def _naive_utc(v):
    # stored as naive UTC, like every other DateTime column
    if isinstance(v, datetime) and v.tzinfo is not None:
        return v.astimezone(timezone.utc).replace(tzinfo=None)
    return v


def _empty_to_none(v):
    if v is None:
        return None
    v = str(v).strip()
    return v or None


class PaymentCreate(BaseModel):
    student_id: Optional[UUID] = None
    family_id: Optional[UUID] = None

    amount: int = Field(gt=0, le=MAX_PAYMENT)
    method: PaymentMethod = "cash"
    occurred_at: Optional[datetime] = None
    memo: Optional[str] = Field(None, max_length=500)
    request_key: Optional[str] = Field(None, max_length=100)

    @field_validator("memo", "request_key", mode="before")
    def empty_to_none(cls, v):
        return _empty_to_none(v)

    @field_validator("occurred_at")
    def to_naive_utc(cls, v):
        return _naive_utc(v)

    @model_validator(mode="after")
    def one_payer(self):
        if (self.student_id is None) == (self.family_id is None):
            raise ValueError("Exactly one of student_id / family_id is required")
        return self


class PaymentResult(BaseModel):
    payment_id: UUID
    month: str
    amount: float
    student_ids: List[UUID] = []


class ManualAllocation(BaseModel):
    student_id: UUID
    amount: int = Field(ge=0)


class FamilyPaymentCreate(BaseModel):
    family_id: UUID
    student_ids: List[UUID] = Field(min_length=1)

    amount: int = Field(gt=0, le=MAX_PAYMENT)
    method: PaymentMethod = "cash"
    occurred_at: Optional[datetime] = None
    memo: Optional[str] = Field(None, max_length=500)

    allocation_mode: AllocationMode = "oldest_first"
    manual_allocations: Optional[List[ManualAllocation]] = None

    leftover_handling: Optional[LeftoverHandling] = None
    consent_given: bool = False
    request_key: Optional[str] = Field(None, max_length=100)

    @field_validator("memo", "request_key", mode="before")
    def empty_to_none(cls, v):
        return _empty_to_none(v)

    @field_validator("occurred_at")
    def to_naive_utc(cls, v):
        return _naive_utc(v)


class AllocationOut(BaseModel):
    student_id: UUID
    amount: float


class FamilyPaymentResult(BaseModel):
    payment_id: UUID
    month: str
    allocations: List[AllocationOut]
    leftover_amount: float
    leftover_handling: Optional[LeftoverHandling] = None


class PaymentModify(BaseModel):
    student_id: UUID
    amount: int = Field(gt=0, le=MAX_PAYMENT)
    method: PaymentMethod = "cash"
    occurred_at: datetime
    memo: Optional[str] = Field(None, max_length=500)
    reason: str = Field(..., max_length=500)

    @field_validator("memo", mode="before")
    def empty_to_none(cls, v):
        return _empty_to_none(v)

    @field_validator("occurred_at")
    def to_naive_utc(cls, v):
        return _naive_utc(v)


class ModifyPaymentResult(BaseModel):
    reversal_payment_id: UUID
    new_payment_id: UUID
    affected_months: List[str]
    affected_students: List[UUID]


class DeletePaymentResult(BaseModel):
    payment_id: UUID
    affected_students: List[UUID]
    affected_months: List[str]
    reversal_tx_count: int
