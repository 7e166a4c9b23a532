import uuid

from sqlalchemy import Column, String, DateTime, Numeric, Text, Boolean, Uuid
from sqlalchemy.sql import func
from tuition_billing.utils.database import Base


class Settlement(Base):
    __tablename__ = "settlements"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid, nullable=False, index=True)
    month = Column(String(7), nullable=False)

    # discount / voluntary_contribution / unapplied_cash
    settlement_type = Column(String(30), nullable=False)

    requested_amount = Column(Numeric(14, 2), nullable=False)
    amount = Column(Numeric(14, 2), nullable=False)  # after clamping to the balance
    reason = Column(Text, nullable=False)

    consent_given = Column(Boolean, nullable=False, default=False)
    approver_id = Column(Uuid, nullable=True)
    approver_name = Column(String(150), nullable=True)

    tx_id = Column(Uuid, nullable=True)
    before_balance = Column(Numeric(14, 2), nullable=False)
    after_balance = Column(Numeric(14, 2), nullable=False)

    created_on = Column(DateTime, server_default=func.now())
