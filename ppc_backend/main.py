"""
Backend API for PPC research exports.

This FastAPI application exposes the de-identified research export pipeline:
an admin or owner requests a dataset (care targets, outcomes or episodes)
for a date range, identifiers are replaced with salted pseudonyms, and the
result is returned as CSV while a manifest row and an audit entry record who
exported what.
"""

from __future__ import annotations

import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from json import JSONDecodeError
from typing import Any, Dict, Iterator, Literal, Optional

import sqlalchemy as sa
import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel
from sqlalchemy.orm import Session, sessionmaker
from structlog.contextvars import bind_contextvars, unbind_contextvars

from ppc_backend.auth import AccessGate, Caller
from ppc_backend.config import get_export_settings
from ppc_backend.db.session import get_session_factory
from ppc_backend.errors import ConfigurationError, ResearchExportError
from ppc_backend.pseudonymize import Pseudonymizer, load_pseudonymizer
from ppc_backend.research_export import (
    RESEARCH_EXPORTS_TOTAL,
    AuditTrailWriter,
    ManifestStore,
    ResearchExportService,
)
from ppc_backend.research_views import (
    DatasetSelector,
    ResearchViewRepository,
    ViewReader,
    parse_export_request,
)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO), format="%(message)s")

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

_TRACE_ID_CTX: ContextVar[str | None] = ContextVar("trace_id", default=None)

EXPORT_RESPONSE_HEADERS = ["Content-Disposition", "X-Export-Id", "X-Row-Count", "X-Hash-Version", "X-Export-Warning"]


class SuccessResponse(BaseModel):
    """Standard successful response envelope."""

    success: Literal[True] = True
    data: Any | None = None


class ErrorDetail(BaseModel):
    """Details describing an error response payload."""

    code: int | str | None = None
    message: str
    details: Any | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    success: Literal[False] = False
    error: ErrorDetail


def _error_response(status_code: int, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(**payload)).model_dump(exclude_none=True)
    return JSONResponse(status_code=status_code, content=body, headers=headers)


START_TIME = time.time()


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - exercised indirectly in integration
    logger.info("lifespan_startup")
    try:
        load_pseudonymizer()
    except ConfigurationError:
        logger.warning("research_salt_missing_at_startup")
    try:
        yield
    finally:
        logger.info("lifespan_shutdown_complete", uptime=round(time.time() - START_TIME, 2))


app = FastAPI(title="PPC Research Export API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv("CORS_ALLOW_ORIGINS", "*").split(",") if o.strip()],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["authorization", "x-client-info", "apikey", "content-type"],
    expose_headers=EXPORT_RESPONSE_HEADERS,
)


@app.middleware("http")
async def inject_trace_id(request: Request, call_next):
    """Attach or propagate a trace identifier for each request."""

    trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
    token = _TRACE_ID_CTX.set(trace_id)
    bind_contextvars(trace_id=trace_id, path=request.url.path, method=request.method)
    request.state.trace_id = trace_id
    response = None
    try:
        response = await call_next(request)
        return response
    except Exception:
        logger.exception("request_failed", path=request.url.path, method=request.method)
        raise
    finally:
        if response is not None:
            response.headers["X-Trace-Id"] = trace_id
        try:
            unbind_contextvars("trace_id", "path", "method")
        except LookupError:  # pragma: no cover - defensive cleanup
            pass
        _TRACE_ID_CTX.reset(token)


@app.exception_handler(ResearchExportError)
async def research_export_error_handler(request: Request, exc: ResearchExportError) -> JSONResponse:
    """Convert pipeline errors into the standard error envelope."""

    return _error_response(exc.status_code, exc.to_payload())


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Convert ``HTTPException`` instances into the standard error envelope."""

    return _error_response(
        exc.status_code,
        {"code": exc.status_code, "message": str(exc.detail)},
        headers=dict(exc.headers or {}),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unexpected failures and hide their details from the caller."""

    logger.exception("unhandled_exception", path=request.url.path, error=exc.__class__.__name__, exc_info=exc)
    return _error_response(500, {"code": "internal_error", "message": "Internal server error"})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    field = str(errors[0]["loc"][-1]) if errors and errors[0].get("loc") else "request"
    return _error_response(
        400,
        {"code": "invalid_argument", "message": f"Invalid value for {field}", "details": {"field": field}},
    )


optional_security = HTTPBearer(auto_error=False)


def get_session(factory: sessionmaker = Depends(get_session_factory)) -> Iterator[Session]:
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def require_export_access(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
    session: Session = Depends(get_session),
) -> Caller:
    token = credentials.credentials if credentials else None
    return AccessGate(session).authorize(token)


def get_pseudonymizer() -> Pseudonymizer:
    return load_pseudonymizer()


def get_view_reader(session: Session = Depends(get_session)) -> ViewReader:
    return ResearchViewRepository(session)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client:
        return request.client.host
    return "unknown"


@app.get("/health", tags=["system"])
def health(factory: sessionmaker = Depends(get_session_factory)) -> Dict[str, Any]:
    """Lightweight health check with a best-effort database flag."""

    try:
        with factory() as session:
            session.execute(sa.text("SELECT 1"))
        db_ok = True
    except Exception:
        db_ok = False
    return {"status": "ok", "uptime": round(time.time() - START_TIME, 2), "db": db_ok}


@app.get("/metrics", tags=["system"], response_model=None)
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/create-research-export", tags=["research"], response_model=None)
@app.post("/api/research-exports", tags=["research"], response_model=None)
async def create_research_export(
    request: Request,
    caller: Caller = Depends(require_export_access),
    pseudonymizer: Pseudonymizer = Depends(get_pseudonymizer),
    reader: ViewReader = Depends(get_view_reader),
    factory: sessionmaker = Depends(get_session_factory),
) -> Response:
    """Produce a pseudonymized CSV export of one research dataset."""

    try:
        payload = await request.json()
    except (JSONDecodeError, UnicodeDecodeError):
        payload = None

    labels = ("unknown", "unknown")
    try:
        export_request = parse_export_request(payload, requested_by=caller.user_id)
        labels = (export_request.dataset_type.value, export_request.export_purpose.value)
        service = ResearchExportService(
            selector=DatasetSelector(reader),
            pseudonymizer=pseudonymizer,
            manifests=ManifestStore(factory),
            audit=AuditTrailWriter(factory),
        )
        result = await run_in_threadpool(
            service.run,
            caller,
            export_request,
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except ResearchExportError as exc:
        RESEARCH_EXPORTS_TOTAL.labels(*labels, exc.code).inc()
        raise
    except Exception as exc:
        RESEARCH_EXPORTS_TOTAL.labels(*labels, "internal_error").inc()
        logger.exception("research_export_unexpected_error", user_id=caller.user_id)
        raise ResearchExportError("Internal server error") from exc

    headers = {
        "Content-Disposition": f'attachment; filename="{result.filename}"',
        "X-Export-Id": result.manifest_id or "unknown",
        "X-Row-Count": str(result.row_count),
        "X-Hash-Version": result.hash_version,
    }
    if result.warnings:
        headers["X-Export-Warning"] = ",".join(result.warnings)
    return Response(content=result.csv_text, media_type="text/csv", headers=headers)


@app.get("/api/research-exports", tags=["research"])
def list_research_exports(
    limit: Optional[int] = Query(None, ge=1, le=100),
    caller: Caller = Depends(require_export_access),
    factory: sessionmaker = Depends(get_session_factory),
) -> Dict[str, Any]:
    """Return recent export manifests, newest first."""

    settings = get_export_settings()
    effective = min(limit or settings.history_default_limit, settings.history_max_limit)
    exports = ManifestStore(factory).list_recent(effective)
    return SuccessResponse(data={"exports": exports, "count": len(exports)}).model_dump()
