from typing import Optional, Literal
from uuid import UUID

from pydantic import BaseModel, Field

SettlementType = Literal["discount", "voluntary_contribution", "unapplied_cash"]


class SettlementCreate(BaseModel):
    student_id: UUID
    month: str = Field(..., pattern=r"^\d{4}-(0[1-9]|1[0-2])$")
    settlement_type: SettlementType
    amount: int = Field(gt=0)
    reason: str = Field(..., max_length=500)
    consent_given: bool = False
    approver_name: Optional[str] = Field(None, max_length=150)


class SettlementResult(BaseModel):
    settlement_id: UUID
    tx_id: UUID
    settlement_type: SettlementType
    requested_amount: float
    amount: float
    before_balance: float
    after_balance: float
