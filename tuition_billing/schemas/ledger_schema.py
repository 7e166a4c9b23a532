from datetime import datetime
from typing import Optional, List, Dict, Any
from uuid import UUID

from pydantic import BaseModel


class AccountBalanceOut(BaseModel):
    code: str
    total_debit: float
    total_credit: float
    balance: float


class StudentBalancesOut(BaseModel):
    student_id: UUID
    accounts: List[AccountBalanceOut]
    total_debit: float
    total_credit: float
    is_balanced: bool


class LedgerRowOut(BaseModel):
    id: UUID
    tx_id: UUID
    tx_key: Optional[str] = None
    account_code: str
    debit: float
    credit: float
    occurred_at: datetime
    month: str
    memo: Optional[str] = None


class IntegrityReportOut(BaseModel):
    ok: bool
    issues: Dict[str, List[Dict[str, Any]]]
    summary: Dict[str, int]


class StatusRepairOut(BaseModel):
    fixed_count: int
    fixed: List[Dict[str, Any]]
