import logging
import sys
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

BASE_DIR = Path(sys.executable).resolve().parent if getattr(sys, "frozen", False) else Path(__file__).resolve().parent
load_dotenv(BASE_DIR / ".env", override=True)

import tuition_billing.models  # noqa: E402,F401  ensure models are registered
from tuition_billing.core.config import CORS_ORIGINS, configure_logging  # noqa: E402
from tuition_billing.core.exceptions import BillingError  # noqa: E402
from tuition_billing.utils.database import engine, Base  # noqa: E402
from tuition_billing.routers import (  # noqa: E402
    tuition_router,
    payments_router,
    settlements_router,
    integrity_router,
    ledger_router,
)

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Tuition Billing API", version="1.0")

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BillingError)
def billing_error_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.detail})


# Routers
app.include_router(tuition_router.router)
app.include_router(payments_router.router)
app.include_router(settlements_router.router)
app.include_router(integrity_router.router)
app.include_router(ledger_router.router)


@app.on_event("startup")
def on_startup():
    # DEV ONLY: production schemas are migrated outside the app
    Base.metadata.create_all(bind=engine)
    logger.info("Tuition billing backend started")


@app.get("/")
def root():
    return {"message": "Tuition Billing Backend is running!!"}
