# main.py — PulseBoard API
# Features:
# - Request correlation IDs + timing
# - Security headers
# - Board WebSocket channel
# - Inbound GitLab webhooks
# - Health check with DB verification

import os
import json
import uuid
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text

import gitlab_config
from database import init_db, close_db, get_db_session
from exceptions import DomainValidationError
from telemetry import setup_telemetry

VERSION = "1.0.0"

# Logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("pulseboard")


def _check_startup_config():
    """Warn about insecure or incomplete configuration."""
    warnings = []

    jwt_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_key or len(jwt_key) < 32:
        warnings.append("JWT_SECRET_KEY is not set or too short; tokens will not survive a restart")

    if not os.getenv("APP_URL"):
        warnings.append(
            f"APP_URL not set; GitLab webhooks will be registered against {gitlab_config.app_url()}"
        )

    logger.info(
        f"GitLab auto-link pattern={gitlab_config.auto_link_pattern().pattern} "
        f"sync_interval={gitlab_config.sync_interval_minutes()}m "
        f"webhooks=/{gitlab_config.webhook_prefix()}/<connection_id>"
    )

    for w in warnings:
        logger.warning(w)

    return len(warnings) == 0


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting PulseBoard API v{VERSION}")
    await init_db()
    _check_startup_config()
    # No-op unless OTEL_EXPORTER_OTLP_ENDPOINT is set
    setup_telemetry(app)
    yield
    logger.info("Shutting down PulseBoard API")
    await close_db()


app = FastAPI(
    title="PulseBoard",
    description="Kanban boards with automation rules and GitLab integration",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ============================================================
# CORS
# ============================================================

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:5173,http://localhost:8080"
    ).split(",")
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Correlation-ID"],
    expose_headers=["X-Request-ID", "X-Correlation-ID"],
)


# ============================================================
# MIDDLEWARE: Correlation IDs + Timing
# ============================================================

@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    correlation_id = request.headers.get("X-Correlation-ID", request_id)
    request.state.request_id = request_id
    request.state.correlation_id = correlation_id

    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Correlation-ID"] = correlation_id
    response.headers["X-Response-Time"] = f"{duration:.4f}s"

    logger.info(
        f"{request.method} {request.url.path} → {response.status_code} "
        f"({duration:.3f}s) [rid={request_id[:8]}]"
    )
    return response


# ============================================================
# MIDDLEWARE: Security Headers
# ============================================================

@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Sanitise errors to ensure JSON serialisability
    errors = []
    for err in exc.errors():
        clean_err = {
            "type": str(err.get("type", "unknown")),
            "loc": list(err.get("loc", [])),
            "msg": str(err.get("msg", "")),
        }
        if "input" in err:
            try:
                json.dumps(err["input"])
                clean_err["input"] = err["input"]
            except (TypeError, ValueError):
                clean_err["input"] = str(err["input"])
        errors.append(clean_err)

    return JSONResponse(
        status_code=422,
        content={
            "detail": errors,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


@app.exception_handler(DomainValidationError)
async def domain_validation_handler(request: Request, exc: DomainValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "detail": exc.to_detail(),
            "request_id": getattr(request.state, "request_id", None),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "request_id": getattr(request.state, "request_id", None),
        },
    )


# ============================================================
# ROUTERS
# ============================================================

from routers import kanban, automation, gitlab, webhooks, websocket_router

app.include_router(kanban.router)
app.include_router(automation.router)
app.include_router(gitlab.router)
app.include_router(webhooks.router)
app.include_router(websocket_router.router)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check():
    """Health check with database connectivity verification"""
    db_status = "unknown"
    try:
        async for db in get_db_session():
            await db.execute(text("SELECT 1"))
            db_status = "connected"
            break
    except Exception as e:
        db_status = f"error: {str(e)[:100]}"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": VERSION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "database": db_status,
    }


@app.get("/")
async def root():
    return {
        "name": "PulseBoard",
        "version": VERSION,
        "docs": "/docs",
        "health": "/health",
        "status": "operational",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=os.getenv("ENVIRONMENT") != "production",
        workers=int(os.getenv("WORKERS", 1)),
    )
