from contextlib import contextmanager
from pathlib import Path
import sys

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker, declarative_base

# ======================================================
# Load .env in BOTH:
# - normal dev run (uvicorn main:app)
# - frozen onefile EXE (run_server.exe)
# ======================================================

if getattr(sys, "frozen", False):
    BASE_DIR = Path(sys.executable).parent
else:
    # This file is: <project_root>/tuition_billing/utils/database.py
    BASE_DIR = Path(__file__).resolve().parents[2]

load_dotenv(dotenv_path=BASE_DIR / ".env")

from tuition_billing.core.config import DATABASE_URL, DB_ECHO  # noqa: E402


def build_engine(url: str = DATABASE_URL, echo: bool = DB_ECHO):
    if url.startswith("sqlite"):
        return create_engine(url, echo=echo, future=True)

    return create_engine(
        url,
        echo=echo,
        pool_pre_ping=True,  # drops dead connections automatically
        pool_size=5,
        max_overflow=10,
        future=True,
    )


engine = build_engine()

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session):
    """
    One logical operation = one database transaction.
    Commits on success; any exception rolls back every write and re-raises.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
