import uuid

from sqlalchemy import Column, String, DateTime, JSON, Uuid
from sqlalchemy.sql import func
from tuition_billing.utils.database import Base


class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)

    entity = Column(String(50), nullable=False)  # payment / invoice / settlement
    entity_id = Column(String(64), nullable=False, index=True)
    action = Column(String(50), nullable=False)

    actor_user_id = Column(Uuid, nullable=True)
    diff = Column(JSON, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
