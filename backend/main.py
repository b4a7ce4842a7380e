# main.py - FabTrack API
# - Request correlation IDs, propagated into every log record
# - Domain errors rendered as {"detail", "code", "request_id"}
# - Post-commit audit dispatcher owned by the lifespan
# - Health check covering the database and the audit dispatcher

import os
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from audit_events import AuditDispatcher
from database import Database
from errors import FabTrackError
from logging_system import RequestContext, reset_current_context, set_current_context, setup_logging
from routers import audit, quotes
from telemetry import setup_telemetry, shutdown_telemetry

setup_logging()
logger = logging.getLogger("fabtrack")

APP_VERSION = "1.0.0"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
AUTO_CREATE_SCHEMA = os.getenv(
    "DB_AUTO_CREATE", "false" if ENVIRONMENT == "production" else "true"
).lower() == "true"
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
    if origin.strip()
]

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


def _warn_on_risky_config() -> None:
    if len(os.getenv("JWT_SECRET_KEY", "")) < 32:
        logger.warning("JWT_SECRET_KEY is not set or too short; tokens will not survive a restart")
    if not os.getenv("EVIDENCE_DIR"):
        logger.warning("EVIDENCE_DIR not set; evidence exports go to ./uploads/evidence")
    if ENVIRONMENT == "production" and AUTO_CREATE_SCHEMA:
        logger.warning("DB_AUTO_CREATE is on in production; run the Alembic migrations instead")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting FabTrack API v{APP_VERSION} ({ENVIRONMENT})")
    _warn_on_risky_config()

    database = Database().open()
    if AUTO_CREATE_SCHEMA:
        await database.create_all()
    dispatcher = AuditDispatcher(database)
    dispatcher.start()
    app.state.database = database
    app.state.audit_dispatcher = dispatcher
    setup_telemetry(app, database.engine)

    yield

    logger.info("Shutting down FabTrack API")
    await dispatcher.stop()
    await database.close()
    shutdown_telemetry()


app = FastAPI(
    title="FabTrack",
    description="Quote versioning, append-only audit trail and legal evidence exports",
    version=APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Correlation-ID"],
    expose_headers=["X-Request-ID", "X-Correlation-ID", "Content-Disposition"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """Bind request ids for logging, time the request, add response headers."""
    context = RequestContext.create(
        request_id=request.headers.get("X-Request-ID"),
        correlation_id=request.headers.get("X-Correlation-ID"),
    )
    request.state.request_id = context.request_id
    token = set_current_context(context)
    started = time.perf_counter()
    try:
        response = await call_next(request)
        elapsed = time.perf_counter() - started
        logger.info(f"{request.method} {request.url.path} → {response.status_code} ({elapsed:.3f}s)")

        response.headers["X-Request-ID"] = context.request_id
        response.headers["X-Correlation-ID"] = context.correlation_id
        response.headers["X-Response-Time"] = f"{elapsed:.4f}s"
        for name, value in SECURITY_HEADERS.items():
            response.headers[name] = value
        return response
    finally:
        reset_current_context(token)


# ============================================================
# ERROR ENVELOPE
# ============================================================

def _error_response(request: Request, status_code: int, detail, code: str = None) -> JSONResponse:
    content = {"detail": detail}
    if code:
        content["code"] = code
    content["request_id"] = getattr(request.state, "request_id", None)
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(FabTrackError)
async def fabtrack_error_handler(request: Request, exc: FabTrackError):
    if exc.http_status >= 500:
        logger.error(f"[{exc.code}] {exc.detail}")
    return _error_response(request, exc.http_status, exc.detail, exc.code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    # Only JSON-safe parts of each error
    errors = [
        {"type": str(e.get("type", "unknown")), "loc": list(e.get("loc", [])), "msg": str(e.get("msg", ""))}
        for e in exc.errors()
    ]
    return _error_response(request, 422, errors)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return _error_response(request, 500, "Internal server error", "FT-SYS-001")


app.include_router(audit.router)
app.include_router(quotes.router)


@app.get("/health")
async def health_check(request: Request):
    """Database connectivity and audit dispatcher state"""
    try:
        await request.app.state.database.ping()
        db_status = "connected"
    except Exception as e:
        db_status = f"error: {str(e)[:100]}"

    dispatcher = getattr(request.app.state, "audit_dispatcher", None)
    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": APP_VERSION,
        "environment": ENVIRONMENT,
        "database": db_status,
        "audit_dispatcher": "running" if dispatcher and dispatcher.running else "stopped",
    }


@app.get("/")
async def root():
    return {"name": "FabTrack", "version": APP_VERSION, "docs": "/docs", "health": "/health"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=ENVIRONMENT != "production",
    )
