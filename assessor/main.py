"""HTTP application: routers, request context, error mapping and health probe."""

from __future__ import annotations

import asyncio
import logging
import os
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from assessor.common.cache import RedisKeyedStore, get_keyed_store
from assessor.common.errors import AssessmentError, RateLimitExceeded
from assessor.core.config import get_settings
from assessor.features.assessments.endpoints import router as assessments_router
from assessor.features.certificates.endpoints import router as certificates_router
from assessor.features.notifications.dispatcher import get_notification_dispatcher

_settings = get_settings()
logging.basicConfig(
    level=getattr(logging, _settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = FastAPI(title=_settings.app_name)
_START_TIME = datetime.now(timezone.utc)


# ------------------------
# CORS Setup
# ------------------------
def _split_csv(raw: str):
    return [o.strip().rstrip("/") for o in raw.split(",") if o.strip()]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_split_csv(_settings.allow_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-Id", "X-RateLimit-Remaining", "Retry-After"],
)


# ------------------------
# Middlewares
# ------------------------
_request_log = logging.getLogger("request")
_audit_log = logging.getLogger("assessment.audit")


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """Tag each request with an id; audit every call on the submission surface."""
    req_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
    request.state.request_id = req_id
    started = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Request-Id"] = req_id
    elapsed_ms = int((time.perf_counter() - started) * 1000)
    _request_log.debug(
        "%s %s -> %s in %sms request_id=%s",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
        req_id,
    )
    if request.url.path.startswith("/assessments"):
        _audit_log.log(
            logging.WARNING if response.status_code >= 400 else logging.INFO,
            "assessment_call user_id=%s method=%s path=%s status=%s request_id=%s",
            request.headers.get("X-User-Id", "anonymous"),
            request.method,
            request.url.path,
            response.status_code,
            req_id,
        )
    return response


# ------------------------
# Errors
# ------------------------
@app.exception_handler(AssessmentError)
async def assessment_error_handler(request: Request, exc: AssessmentError):
    headers = {}
    if isinstance(exc, RateLimitExceeded):
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.code, **exc.extra}, headers=headers)


# ------------------------
# Routers
# ------------------------
app.include_router(assessments_router)
app.include_router(certificates_router)


# ------------------------
# Meta endpoints
# ------------------------
def _ping_database() -> None:
    from assessor.db.session import get_engine

    with get_engine().connect() as conn:
        conn.execute(text("SELECT 1"))


@app.get("/healthz", tags=["meta"], summary="Liveness / readiness probe")
async def healthz() -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    components: Dict[str, Any] = {}
    degraded = False

    if _settings.get_database_url():
        try:
            start = time.perf_counter()
            await asyncio.to_thread(_ping_database)
            components["database"] = {"status": "ok", "latency_ms": round((time.perf_counter() - start) * 1000, 2)}
        except SQLAlchemyError as e:
            degraded = True
            components["database"] = {"status": f"error:{type(e).__name__}"}
    else:
        components["database"] = {"status": "in-memory"}

    store = get_keyed_store()
    if isinstance(store, RedisKeyedStore):
        try:
            components["keyed_store"] = {"status": "ok" if await store.ping() else "error"}
        except Exception as e:
            degraded = True
            components["keyed_store"] = {"status": f"error:{type(e).__name__}"}
    else:
        components["keyed_store"] = {"status": "in-memory"}

    components["embeddings"] = "configured" if _settings.embeddings_enabled else "missing-config"

    return {
        "status": "degraded" if degraded else "ok",
        "time_utc": now.isoformat(),
        "uptime_seconds": round((now - _START_TIME).total_seconds(), 2),
        "version": os.getenv("APP_VERSION", "dev"),
        "environment": "debug" if _settings.debug else "prod",
        "components": components,
    }


# ------------------------
# Lifecycle
# ------------------------
@app.on_event("startup")
async def _prepare_storage():
    if _settings.get_database_url():
        from assessor.db.session import create_tables

        await asyncio.to_thread(create_tables)


@app.on_event("shutdown")
async def _drain_notifications():
    await get_notification_dispatcher().drain()
