"""
High Leverage Humans Backend API
FastAPI application for landing-page email capture.
"""

import logging
import os
from datetime import datetime, timezone
from typing import List

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.models.lead import HealthResponse
from app.routers import email_capture

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"

# Production domain and its staging / preview hosts
PRODUCTION_ORIGINS = [
    "https://highleveragehumans.com",
    "https://www.highleveragehumans.com",
]
PREVIEW_ORIGIN_REGEX = (
    r"^https://[a-z0-9-]+\.highleveragehumans\.com$"
    r"|^https://highleveragehumans-[a-z0-9-]+\.web\.app$"
    r"|^https://highleveragehumans-[a-z0-9-]+\.firebaseapp\.com$"
)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
}

app = FastAPI(
    title="High Leverage Humans API",
    description="Email capture backend for the highleveragehumans.com landing page",
    version=API_VERSION,
)


def get_cors_origins() -> List[str]:
    """
    Build the explicit list of allowed CORS origins.

    Always includes the production domain (apex and www). Staging subdomains
    and hosting preview channels are matched by PREVIEW_ORIGIN_REGEX instead.

    Additional origins (e.g. a local dev server) are read from the
    CORS_ORIGINS environment variable as a comma-separated list:
        CORS_ORIGINS=http://localhost:5000,http://127.0.0.1:5000

    Duplicates are removed while preserving order.
    """
    extra_origins: List[str] = []
    cors_env = os.getenv("CORS_ORIGINS", "").strip()
    if cors_env:
        extra_origins = [o.strip() for o in cors_env.split(",") if o.strip()]

    seen: set = set()
    origins: List[str] = []
    for origin in PRODUCTION_ORIGINS + extra_origins:
        if origin not in seen:
            seen.add(origin)
            origins.append(origin)

    return origins


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_origin_regex=PREVIEW_ORIGIN_REGEX,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    max_age=86400,
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    for header, value in SECURITY_HEADERS.items():
        response.headers.setdefault(header, value)
    return response


app.include_router(email_capture.router, tags=["email-capture"])


# ---------------------------------------------------------------------------
# Error envelope: every failure is {"success": false, "error": "..."}
# ---------------------------------------------------------------------------

@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404 and exc.detail == "Not Found":
        message = "Endpoint not found"
    else:
        message = exc.detail

    content = {"success": False, "error": message}
    headers = getattr(exc, "headers", None)
    if exc.status_code == 429 and headers and "Retry-After" in headers:
        content["retryAfter"] = int(headers["Retry-After"])

    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": "Invalid request data"},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    """Catch-all - never leaks internal details."""
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error"},
    )


@app.on_event("startup")
async def log_startup_url() -> None:
    host_port = os.getenv("HOST_PORT", "8000")
    logger.info("High Leverage Humans API running at http://localhost:%s", host_port)


@app.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse(
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=API_VERSION,
    )
