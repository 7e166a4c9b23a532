import uuid

from sqlalchemy import (
    Column, Integer, String, DateTime, Numeric, Text, ForeignKey, JSON, Uuid
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from tuition_billing.utils.database import Base


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    # exactly one of student_id / family_id is set on a root payment
    student_id = Column(Uuid, nullable=True, index=True)
    family_id = Column(Uuid, nullable=True, index=True)

    amount = Column(Numeric(14, 2), nullable=False)
    method = Column(String(20), nullable=False, default="cash")  # cash/bank_transfer/card/other
    occurred_at = Column(DateTime, nullable=False)
    memo = Column(Text, nullable=True)

    # reversal and corrected-repost rows point back to the payment they replace
    parent_payment_id = Column(
        Uuid, ForeignKey("payments.id", ondelete="SET NULL"), nullable=True, index=True
    )

    # client retry token
    request_key = Column(String(100), unique=True, nullable=True)

    created_by = Column(Uuid, nullable=True)
    created_on = Column(DateTime, server_default=func.now())

    allocations = relationship(
        "PaymentAllocation",
        back_populates="payment",
        cascade="all, delete-orphan",
        lazy="selectin",
        passive_deletes=True,
        order_by="PaymentAllocation.allocation_order",
    )


class PaymentAllocation(Base):
    __tablename__ = "payment_allocations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id = Column(Uuid, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    student_id = Column(Uuid, nullable=False, index=True)

    allocated_amount = Column(Numeric(14, 2), nullable=False, default=0)
    allocation_order = Column(Integer, nullable=False, default=1)

    payment = relationship("Payment", back_populates="allocations")


class PaymentModification(Base):
    __tablename__ = "payment_modifications"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    original_payment_id = Column(Uuid, ForeignKey("payments.id", ondelete="SET NULL"), nullable=True)
    reversal_payment_id = Column(Uuid, ForeignKey("payments.id", ondelete="SET NULL"), nullable=True)
    new_payment_id = Column(Uuid, ForeignKey("payments.id", ondelete="SET NULL"), nullable=True)

    reason = Column(Text, nullable=False)
    before_data = Column(JSON, nullable=False)
    after_data = Column(JSON, nullable=False)

    created_by = Column(Uuid, nullable=True)
    created_on = Column(DateTime, server_default=func.now())


class PaymentDeletion(Base):
    __tablename__ = "payment_deletions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    # the payment row is gone; keep the id without a FK
    payment_id = Column(Uuid, nullable=False, index=True)

    snapshot = Column(JSON, nullable=False)
    deletion_reason = Column(Text, nullable=False)

    deleted_by = Column(Uuid, nullable=True)
    deleted_on = Column(DateTime, server_default=func.now())
