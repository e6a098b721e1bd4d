'''
FastAPI application for the fee ledger.
'''
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from .database.engine import create_all_tables, create_db_engine_and_session_factory, dispose_db_engine
from .common.logger import log
from .common.config import settings
from .common.exceptions import (
    FeeLedgerError,
    PaymentValidationError,
    AccountNotFoundError,
    FeeStructureMissingError,
    ConcurrencyConflictError,
    StorageUnavailableError,
)
from .api import fee_status, payments, fee_structures, reconciliation

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Handles application startup and shutdown events.
    """
    # --- On App Startup ---
    log.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}...")
    create_db_engine_and_session_factory()
    if settings.TEST_MODE:
        # the local test database starts empty
        await create_all_tables()

    yield # --- Application is now running ---

    # --- On App Shutdown ---
    if not settings.TEST_MODE:
        log.info("Application lifespan shutdown...")
        await dispose_db_engine()
    else:
        log.info("Skipping database engine disposal in TEST_MODE.")


# ---- CREATING THE APP ----
app = FastAPI(
    title=settings.APP_NAME,
    description=settings.APP_DESCRIPTION,
    version=settings.APP_VERSION,
    lifespan=lifespan
)

# --- Add CORS Middleware ---
origins = [
    "http://localhost",
    "http://localhost:3000",
]
origins.extend(settings.BACKEND_CORS_ORIGINS)

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],)
# --- End of CORS Middleware ---

# --- Domain Error Mapping ---
# most specific first; the lookup walks the class hierarchy
ERROR_STATUS_CODES = {
    AccountNotFoundError: status.HTTP_404_NOT_FOUND,
    PaymentValidationError: status.HTTP_422_UNPROCESSABLE_CONTENT,
    FeeStructureMissingError: status.HTTP_409_CONFLICT,
    ConcurrencyConflictError: status.HTTP_409_CONFLICT,
    StorageUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
}

@app.exception_handler(FeeLedgerError)
async def fee_ledger_error_handler(request: Request, exc: FeeLedgerError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type in type(exc).__mro__:
        if error_type in ERROR_STATUS_CODES:
            status_code = ERROR_STATUS_CODES[error_type]
            break
    log.warning(f"{request.method} {request.url.path} failed with {type(exc).__name__}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__}
    )

@app.get("/")
async def health_check():
    return {"status": "ok", "message": f"{settings.APP_NAME} is running"}

app.include_router(fee_status.router)
app.include_router(payments.router)
app.include_router(fee_structures.router)
app.include_router(reconciliation.router)
