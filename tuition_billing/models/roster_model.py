# tuition_billing/models/roster_model.py
# Read-only inputs owned by the wider portal (people, classes, schedule, attendance).
import uuid

from sqlalchemy import (
    Column,
    String,
    Date,
    Time,
    DateTime,
    Numeric,
    Boolean,
    ForeignKey,
    Index,
    Uuid,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from tuition_billing.utils.database import Base


class Family(Base):
    __tablename__ = "families"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(150), nullable=False)

    students = relationship("Student", back_populates="family")


class Student(Base):
    __tablename__ = "students"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    full_name = Column(String(150), nullable=False)

    family_id = Column(Uuid, ForeignKey("families.id", ondelete="SET NULL"), nullable=True, index=True)
    linked_user_id = Column(Uuid, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)
    created_on = Column(DateTime, server_default=func.now())

    family = relationship("Family", back_populates="students")


class Teacher(Base):
    __tablename__ = "teachers"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    full_name = Column(String(150), nullable=False)


class ClassGroup(Base):
    __tablename__ = "classes"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(150), nullable=False)

    teacher_id = Column(Uuid, ForeignKey("teachers.id", ondelete="SET NULL"), nullable=True)
    session_rate = Column(Numeric(14, 2), nullable=False, default=0)

    is_active = Column(Boolean, nullable=False, default=True)


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (
        Index("ix_enrollments_student_class", "student_id", "class_id"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    # no FK: orphaned rows are what the integrity scan looks for
    student_id = Column(Uuid, nullable=False, index=True)
    class_id = Column(Uuid, nullable=False, index=True)

    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)

    # percent / amount
    discount_type = Column(String(10), nullable=True)
    discount_value = Column(Numeric(14, 2), nullable=True)
    # monthly / yearly / once
    discount_cadence = Column(String(10), nullable=True)


class ClassSession(Base):
    __tablename__ = "sessions"
    __table_args__ = (
        Index("ix_sessions_class_date", "class_id", "date"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    class_id = Column(Uuid, nullable=False)
    teacher_id = Column(Uuid, nullable=True)

    date = Column(Date, nullable=False, index=True)
    start_time = Column(Time, nullable=True)
    end_time = Column(Time, nullable=True)

    # Scheduled / Held / Canceled
    status = Column(String(20), nullable=False, default="Scheduled")


class Attendance(Base):
    __tablename__ = "attendance"
    __table_args__ = (
        Index("ix_attendance_session_student", "session_id", "student_id"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id = Column(Uuid, nullable=False)
    student_id = Column(Uuid, nullable=False)

    # Present / Absent / Excused
    status = Column(String(20), nullable=False)
