import uuid

from sqlalchemy import (
    Column, String, DateTime, Numeric, Text, UniqueConstraint, Uuid
)
from sqlalchemy.sql import func
from tuition_billing.utils.database import Base


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        UniqueConstraint("student_id", "month", name="uq_invoice_student_month"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid, nullable=False, index=True)
    month = Column(String(7), nullable=False, index=True)  # YYYY-MM

    base_amount = Column(Numeric(14, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(14, 2), nullable=False, default=0)
    total_amount = Column(Numeric(14, 2), nullable=False, default=0)
    paid_amount = Column(Numeric(14, 2), nullable=False, default=0)

    # draft / partial / paid (derived from paid_amount vs total_amount)
    status = Column(String(10), nullable=False, default="draft")

    # pending / confirmed / adjusted
    confirmation_status = Column(String(10), nullable=False, default="pending")
    confirmed_at = Column(DateTime, nullable=True)
    confirmed_by = Column(Uuid, nullable=True)
    confirmation_notes = Column(Text, nullable=True)

    created_on = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
