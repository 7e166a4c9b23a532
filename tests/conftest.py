"""
Shared fixtures: an in-memory SQLite database per test, principals, and
small builders for the roster data the billing core reads.
"""
import os
import uuid
from datetime import date, datetime, time
from decimal import Decimal

import pytest

# must be set before tuition_billing.utils.database builds its engine
os.environ["DATABASE_URL"] = "sqlite://"

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import tuition_billing.models  # noqa: E402,F401
from tuition_billing.core.security import ADMIN_ROLE, Principal, create_access_token  # noqa: E402
from tuition_billing.models.roster_model import (  # noqa: E402
    Attendance,
    ClassGroup,
    ClassSession,
    Enrollment,
    Family,
    Student,
)
from tuition_billing.models.user_model import User, UserRole  # noqa: E402
from tuition_billing.utils.database import Base, get_db  # noqa: E402


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def db(engine):
    TestingSession = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


def make_user(db, *roles) -> User:
    user = User(email=f"{uuid.uuid4().hex[:8]}@example.com")
    db.add(user)
    db.flush()
    for role in roles:
        db.add(UserRole(user_id=user.id, role=role))
    db.commit()
    return user


@pytest.fixture
def admin_user(db):
    return make_user(db, ADMIN_ROLE)


@pytest.fixture
def staff_user(db):
    return make_user(db, "teacher")


@pytest.fixture
def admin(admin_user):
    return Principal(user_id=admin_user.id, roles=frozenset({ADMIN_ROLE}))


@pytest.fixture
def staff(staff_user):
    return Principal(user_id=staff_user.id, roles=frozenset({"teacher"}))


# -------------------------------------------------
# Roster builders
# -------------------------------------------------
def make_family(db, name="Nguyen") -> Family:
    family = Family(name=name)
    db.add(family)
    db.flush()
    return family


def make_student(db, name="An", family=None, **kw) -> Student:
    student = Student(full_name=name, family_id=family.id if family else None, **kw)
    db.add(student)
    db.flush()
    return student


def make_class(db, rate=210000, name="Math 6") -> ClassGroup:
    cls = ClassGroup(name=name, session_rate=Decimal(str(rate)))
    db.add(cls)
    db.flush()
    return cls


def enroll(db, student, cls, start=date(2024, 1, 1), end=None, **discount) -> Enrollment:
    e = Enrollment(student_id=student.id, class_id=cls.id, start_date=start, end_date=end, **discount)
    db.add(e)
    db.flush()
    return e


def add_session(db, cls, student, day: date, status="Held", attendance="Present") -> ClassSession:
    s = ClassSession(
        class_id=cls.id,
        date=day,
        start_time=time(17, 0),
        end_time=time(18, 30),
        status=status,
    )
    db.add(s)
    db.flush()
    if attendance:
        db.add(Attendance(session_id=s.id, student_id=student.id, status=attendance))
        db.flush()
    return s


def seed_billed_student(db, name="An", family=None, rate=210000, days=(), **discount) -> Student:
    """A student enrolled in one class with a Present attendance on each day."""
    student = make_student(db, name, family)
    cls = make_class(db, rate, name=f"Class of {name}")
    enroll(db, student, cls, **discount)
    for d in days:
        add_session(db, cls, student, d)
    db.commit()
    return student


SEPT_DAYS = (date(2024, 9, 3), date(2024, 9, 10), date(2024, 9, 17), date(2024, 9, 24))


@pytest.fixture
def sept_student(db):
    """4 billable sessions at 210,000 with a 10% monthly enrollment discount: 756,000 due for 2024-09."""
    return seed_billed_student(
        db,
        days=SEPT_DAYS,
        discount_type="percent",
        discount_value=Decimal("10"),
        discount_cadence="monthly",
    )


@pytest.fixture
def paid_at():
    return datetime(2024, 9, 25, 10, 30)


# -------------------------------------------------
# HTTP
# -------------------------------------------------
@pytest.fixture
def client(db):
    from main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth_header(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}
