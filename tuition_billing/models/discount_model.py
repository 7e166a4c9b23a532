import uuid

from sqlalchemy import (
    Column,
    String,
    Date,
    Numeric,
    Boolean,
    Text,
    ForeignKey,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import relationship
from tuition_billing.utils.database import Base


class DiscountDefinition(Base):
    __tablename__ = "discount_definitions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(120), nullable=False)

    type = Column(String(10), nullable=False)  # percent / amount
    value = Column(Numeric(14, 2), nullable=False)

    is_active = Column(Boolean, nullable=False, default=True)


class DiscountAssignment(Base):
    __tablename__ = "discount_assignments"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    discount_definition_id = Column(
        Uuid, ForeignKey("discount_definitions.id", ondelete="CASCADE"), nullable=False
    )

    effective_from = Column(Date, nullable=False)
    effective_to = Column(Date, nullable=True)

    definition = relationship("DiscountDefinition", lazy="joined")


class ReferralBonus(Base):
    __tablename__ = "referral_bonuses"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)

    type = Column(String(10), nullable=False)  # percent / amount
    value = Column(Numeric(14, 2), nullable=False)

    effective_from = Column(Date, nullable=False)
    effective_to = Column(Date, nullable=True)


class SiblingDiscountState(Base):
    __tablename__ = "sibling_discount_state"
    __table_args__ = (
        UniqueConstraint("family_id", "month", name="uq_sibling_state_family_month"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    family_id = Column(Uuid, ForeignKey("families.id", ondelete="CASCADE"), nullable=False, index=True)
    month = Column(String(7), nullable=False)  # YYYY-MM

    # assigned / pending / none
    status = Column(String(10), nullable=False, default="none")
    winner_student_id = Column(Uuid, nullable=True)
    sibling_percent = Column(Numeric(5, 2), nullable=False, default=0)
    reason = Column(Text, nullable=True)
