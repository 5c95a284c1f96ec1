import sqlite3
import time
import uuid
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .deps import get_engine
from .logs import json_log
from .reconciliation import ReconciliationEngine
from .routers.returns import router as returns_router
from .routers.sync import router as sync_router

app = FastAPI(title="Returns Desk", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


# Local storage problems are reported as such, never as "processed".
@app.exception_handler(sqlite3.Error)
def _local_storage_error(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log("error", "http.request.storage_error", request_id=rid, path=req.url.path, error=str(exc))
    content = {"detail": "local storage unavailable", "request_id": rid}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=503, content=content)


# Correlation id + basic structured request logging.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method

    try:
        response = await call_next(request)
    except Exception as exc:
        json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            duration_ms=int((time.time() - started) * 1000),
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    if path != "/health":
        json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            duration_ms=int((time.time() - started) * 1000),
        )
    return response


# Dev CORS: the till UI runs on a different port during development.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(returns_router)
app.include_router(sync_router)


@app.get("/health")
def health(engine: ReconciliationEngine = Depends(get_engine)):
    return {
        "ok": True,
        "env": settings.env,
        "version": settings.api_version,
        "store_id": engine.store_id,
        "online": engine.is_online(),
        "started_at": STARTED_AT_UTC.isoformat(),
    }
