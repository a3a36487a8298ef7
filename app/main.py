import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.api import admin, health, payments, ready
from app.core.config import settings
from app.core.errors import (
    AlreadyClaimed,
    AlreadySwept,
    DuplicateProviderReference,
    InvalidArgument,
    InvalidState,
    NotConfigured,
    NotFound,
    ProviderUnavailable,
    SettlementError,
    VerificationRejected,
)
from app.core.sentry import init_sentry

logger = logging.getLogger("settlement")
app = FastAPI(title="Settlement Core", version="1.0.0")

app.include_router(health.router, prefix="/api")
app.include_router(ready.router, prefix="/api")
app.include_router(payments.router, prefix="/api")
app.include_router(admin.router, prefix="/api")

# most specific first
_STATUS_BY_ERROR = (
    (InvalidArgument, 422),
    (NotFound, 404),
    (AlreadyClaimed, 409),
    (AlreadySwept, 409),
    (DuplicateProviderReference, 409),
    (InvalidState, 409),
    (NotConfigured, 503),
    (ProviderUnavailable, 503),
    (VerificationRejected, 422),
)


def status_for(exc: SettlementError) -> int:
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return code
    return 400


@app.exception_handler(SettlementError)
async def settlement_error_handler(request: Request, exc: SettlementError):
    code = status_for(exc)
    if code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse({"error": exc.code, "detail": exc.message}, status_code=code)


@app.on_event("startup")
async def startup_event():
    logging.basicConfig(level=settings.LOG_LEVEL)
    init_sentry("settlement-api")
    logger.info("Starting settlement core API")


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down settlement core API")
