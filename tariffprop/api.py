#!/usr/bin/env python3
"""
tariffprop.api — Tariff Propagation API Server

Exposes per-session TariffPropagation engines over HTTP. A client opens a
session, edits tariffs for one or more countries, and pulls the
percent-change export bundle for the downstream price model.

Endpoints:
    GET    /                                          → API metadata
    GET    /health                                    → Liveness probe
    GET    /ready                                     → Readiness probe
    GET    /bea-codes                                 → Fixed BEA column order
    POST   /sessions                                  → Open a session (201)
    DELETE /sessions/{sid}                            → Close a session (204)
    POST   /sessions/{sid}/countries/{cc}/select      → Activate a country
    POST   /sessions/{sid}/countries/{cc}/tariffs     → Edit one node
    GET    /sessions/{sid}/countries/{cc}/tariffs     → Read one node
    POST   /sessions/{sid}/countries/{cc}/export      → Export bundle
    DELETE /sessions/{sid}/countries/{cc}             → Clear one country
    POST   /sessions/{sid}/scenario                   → Run a full scenario
    DELETE /sessions/{sid}/tariffs                    → Clear all countries

Error contract:
    400 → INVALID_TARIFF_INPUT (body or query validation failures)
    404 → unknown session / malformed country code
    413 → request body over MAX_BODY_BYTES
    422 → TARIFF_EDIT_REJECTED (node not in the hierarchy)
    503 → tariff data not loaded
    500 → TARIFF_COMPUTATION_FAILED / "Internal server error." (never leaks)

Environment variables:
    ENV                 "dev" or "prod" (default "prod"); dev turns on debug
                        logging and /docs
    ALLOWED_ORIGINS     extra CORS origins, comma-separated
    ENABLE_DOCS         "1" serves /docs in prod as well
    REQUIRE_DATA        "1" exits at startup when the data cannot be loaded
    REDIS_URL           shared rate-limit storage across workers
    RATE_LIMIT_DEFAULT  limit for undecorated routes (default "240/minute")
    HOST, PORT          bind address for `python -m tariffprop.api`
    TARIFFPROP_*        data location and selection, see tariffprop.sources
    MAX_SESSIONS        see tariffprop.session_store

Requires: fastapi, uvicorn, slowapi
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any, Optional

try:
    from fastapi import FastAPI, HTTPException, Query, Request
    from fastapi.middleware.cors import CORSMiddleware
    from fastapi.responses import JSONResponse, Response
    from pydantic import ValidationError
    from slowapi import Limiter
    from slowapi.errors import RateLimitExceeded
    from slowapi.util import get_remote_address
    from starlette.middleware.gzip import GZipMiddleware
except ImportError as _missing:
    print(
        f"FATAL: {_missing.name} not installed. Install the service with:\n"
        "  pip install -e .\n",
        file=sys.stderr,
    )
    sys.exit(1)

from tariffprop.constants import CUSTOM_BEA_ORDER, LEVEL_SECTION, TARIFF_CURRENT
from tariffprop.engine import TariffPropagation
from tariffprop.export import apply_trade_weighting
from tariffprop.scenario import (
    ExportOptions,
    ScenarioRequest,
    TariffEdit,
    apply_edit,
    normalize_mode,
    normalize_pass_through,
    run_scenario,
    select_country,
)
from tariffprop.security import (
    ETagMiddleware,
    RequestContextMiddleware,
    RequestSizeLimitMiddleware,
    SecurityHeadersMiddleware,
)
from tariffprop.session_store import Session, SessionStore
from tariffprop.sources import (
    DATA_DIR,
    IMPORT_SCHEME,
    TARIFF_MEASURE,
    TARIFF_YEAR,
    DataSourceError,
    TariffDataset,
)


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

API_VERSION = "0.1.0"

ENV = os.getenv("ENV", "prod").strip().lower()
IS_DEV = ENV == "dev"
ENABLE_DOCS = IS_DEV or os.getenv("ENABLE_DOCS", "").strip() == "1"
REQUIRE_DATA = os.getenv("REQUIRE_DATA", "").strip() == "1"
REDIS_URL = os.getenv("REDIS_URL", "").strip()
RATE_LIMIT_DEFAULT = os.getenv("RATE_LIMIT_DEFAULT", "240/minute").strip()

# ISO 3166 alpha-2 or alpha-3
_COUNTRY_RE = re.compile(r"^[A-Za-z]{2,3}$")


# ---------------------------------------------------------------------------
# Logging: one JSON object per line on stdout
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.DEBUG if IS_DEV else logging.INFO,
    format="%(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger("tariffprop.api")


# ---------------------------------------------------------------------------
# Rate limiter (per client address; Redis-backed when REDIS_URL is set)
# ---------------------------------------------------------------------------

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri=REDIS_URL or "memory://",
    strategy="fixed-window",
)


# ---------------------------------------------------------------------------
# Runtime state: dataset and session store, replaced as a pair
# ---------------------------------------------------------------------------

_runtime: dict[str, Any] = {"dataset": None, "store": None}


def install_dataset(dataset: Optional[TariffDataset]) -> SessionStore:
    """Make `dataset` the one new sessions are built from.

    Drops every existing session. Passing None puts the service in
    degraded mode (session endpoints answer 503).
    """
    store = SessionStore(lambda: TariffPropagation().initialize(dataset=dataset))
    _runtime["dataset"] = dataset
    _runtime["store"] = store
    return store


def _load_dataset() -> Optional[TariffDataset]:
    try:
        return TariffDataset.from_directory(DATA_DIR, TARIFF_MEASURE, TARIFF_YEAR, IMPORT_SCHEME)
    except (DataSourceError, ValueError) as exc:
        logger.error(json.dumps({
            "event": "dataset_load_failed",
            "data_dir": str(DATA_DIR),
            "error_type": type(exc).__name__,
            "error": str(exc),
        }))
        return None


# ---------------------------------------------------------------------------
# CORS allow-list: local dev front end plus ALLOWED_ORIGINS.
# No wildcard, no credentials.
# ---------------------------------------------------------------------------

DEV_ORIGINS: tuple[str, ...] = ("http://localhost:3000",)


def _cors_origins(raw: str) -> list[str]:
    origins = list(DEV_ORIGINS)
    for origin in (o.strip() for o in raw.split(",")):
        if origin and origin != "*" and origin not in origins:
            origins.append(origin)
    return origins


_CORS_ORIGINS = _cors_origins(os.getenv("ALLOWED_ORIGINS", ""))


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Load the tariff dataset once at startup; drop all sessions on shutdown.

    Without data the service runs degraded, unless REQUIRE_DATA=1.
    """
    logger.info(json.dumps({
        "event": "startup",
        "env": ENV,
        "version": API_VERSION,
        "data_dir": str(DATA_DIR),
        "tariff_measure": TARIFF_MEASURE,
        "tariff_year": TARIFF_YEAR,
        "import_scheme": IMPORT_SCHEME,
        "require_data": REQUIRE_DATA,
        "cors_origins": len(_CORS_ORIGINS),
        "docs_enabled": ENABLE_DOCS,
        "rate_limit_storage": "redis" if REDIS_URL else "memory",
    }))

    dataset = _load_dataset()
    if dataset is None and REQUIRE_DATA:
        logger.error(json.dumps({"event": "startup_abort", "reason": "tariff_data_unavailable"}))
        sys.exit(1)
    if dataset is None:
        logger.warning(json.dumps({"event": "startup_degraded", "reason": "tariff_data_unavailable"}))
    install_dataset(dataset)

    yield

    store: Optional[SessionStore] = _runtime["store"]
    logger.info(json.dumps({
        "event": "shutdown",
        "sessions_dropped": store.clear() if store is not None else 0,
    }))


app = FastAPI(
    title="Tariff Propagation API",
    description="Bidirectional Section → Chapter → HS4 tariff propagation with BEA export vectors.",
    version=API_VERSION,
    lifespan=_lifespan,
    docs_url="/docs" if ENABLE_DOCS else None,
    redoc_url="/redoc" if ENABLE_DOCS else None,
    openapi_url="/openapi.json" if ENABLE_DOCS else None,
)
app.state.limiter = limiter

# Last registered runs outermost:
# GZip → RequestContext → RequestSizeLimit → ETag → SecurityHeaders → CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID", "ETag"],
    max_age=3600,
)
app.add_middleware(SecurityHeadersMiddleware, enable_hsts=not IS_DEV)
app.add_middleware(ETagMiddleware)
app.add_middleware(RequestSizeLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(GZipMiddleware, minimum_size=500)


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

class InvalidTariffInput(Exception):
    """Request body or query failed validation. Rendered as 400."""

    def __init__(self, message: str, details: Any = None) -> None:
        self.message = message
        self.details = details if details is not None else {}
        super().__init__(message)


def _request_context(request: Request) -> dict[str, Any]:
    return {
        "request_id": getattr(request.state, "request_id", "unknown"),
        "session_prefix": (getattr(request.state, "session_id", None) or "")[:8] or None,
        "path": request.url.path,
    }


@app.exception_handler(InvalidTariffInput)
async def _invalid_input_handler(request: Request, exc: InvalidTariffInput) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={"error": "INVALID_TARIFF_INPUT", "message": exc.message, "details": exc.details},
    )


@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(json.dumps({"event": "rate_limited", "limit": str(exc.detail), **_request_context(request)}))
    return JSONResponse(
        status_code=429,
        content={"detail": f"Rate limit exceeded ({exc.detail}). Try again later."},
        headers={"Retry-After": "60"},
    )


@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(json.dumps({
        "event": "unhandled_exception",
        "exception_type": type(exc).__name__,
        **_request_context(request),
    }))
    return JSONResponse(status_code=500, content={"detail": "Internal server error."})


def _computation_failed(request: Request, exc: Exception, **context: Any) -> JSONResponse:
    """Log a failed engine computation server-side; never leak it."""
    logger.error(json.dumps({
        "event": "tariff_computation_failed",
        "error_type": type(exc).__name__,
        "error": str(exc),
        **_request_context(request),
        **context,
    }))
    return JSONResponse(
        status_code=500,
        content={"error": "TARIFF_COMPUTATION_FAILED", "message": "Internal tariff computation error."},
    )



# ---------------------------------------------------------------------------
# Input helpers
# ---------------------------------------------------------------------------

def _validation_details(exc: ValidationError) -> Any:
    items = [
        {
            "field": ".".join(str(p) for p in e.get("loc", [])),
            "message": e.get("msg", "Validation failed"),
        }
        for e in exc.errors()
    ]
    return items[0] if len(items) == 1 else items


async def _json_body(request: Request, required: bool = True) -> dict[str, Any]:
    """Parse the request body as a JSON object.

    With required=False an empty body parses as {}.
    """
    raw_bytes = await request.body()
    if not raw_bytes.strip() and not required:
        return {}
    try:
        raw = json.loads(raw_bytes)
    except (ValueError, UnicodeDecodeError):
        raise InvalidTariffInput(
            "Request body is not valid JSON.",
            {"parse_error": "Could not decode JSON."},
        )
    if not isinstance(raw, dict):
        raise InvalidTariffInput("Request body must be a JSON object.")
    return raw


def _validate_country_code(code: str) -> str:
    """Normalise a path country code. Raises 404 if malformed."""
    code = code.strip().upper()
    if not _COUNTRY_RE.match(code):
        raise HTTPException(status_code=404, detail=f"Country '{code}' is not an ISO code.")
    return code


def _store() -> SessionStore:
    store: Optional[SessionStore] = _runtime["store"]
    if store is None or _runtime["dataset"] is None:
        raise HTTPException(status_code=503, detail="Tariff data not loaded.")
    return store


def _session(session_id: str) -> Session:
    session = _store().get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found.")
    return session


def _mode_and_pass_through(raw: dict[str, Any]) -> tuple[str, float]:
    try:
        mode = normalize_mode(raw.get("mode"))
    except ValueError as exc:
        raise InvalidTariffInput(str(exc), {"field": "mode"})
    pass_through = normalize_pass_through(raw.get("pass_through", raw.get("passThrough", 1.0)))
    return mode, pass_through


# ---------------------------------------------------------------------------
# Service endpoints
# ---------------------------------------------------------------------------

@app.get("/")
@limiter.limit("60/minute")
async def root(request: Request) -> dict:
    """API metadata."""
    return {
        "name": "tariffprop",
        "version": API_VERSION,
        "bea_code_count": len(CUSTOM_BEA_ORDER),
    }


@app.get("/health", include_in_schema=False)
async def health(request: Request) -> JSONResponse:
    """Liveness probe. ALWAYS 200, no state reads."""
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "version": API_VERSION},
    )


@app.get("/ready")
@limiter.limit("60/minute")
async def ready(request: Request) -> JSONResponse:
    """Readiness probe: diagnostics, always 200.

    Business-level readiness is the 'ready' field in the body.
    """
    dataset: Optional[TariffDataset] = _runtime["dataset"]
    store: Optional[SessionStore] = _runtime["store"]
    body = {
        "ready": dataset is not None,
        "status": "healthy" if dataset is not None else "degraded",
        "version": API_VERSION,
        "data_loaded": dataset is not None,
        "sections": len(dataset.hierarchy) if dataset is not None else 0,
        "tariff_measure": dataset.measure if dataset is not None else None,
        "tariff_year": dataset.year if dataset is not None else None,
        "sessions": store.stats if store is not None else None,
        "timestamp": datetime.now(UTC).isoformat(),
    }
    return JSONResponse(status_code=200, content=body)


@app.get("/bea-codes")
@limiter.limit("60/minute")
async def bea_codes(request: Request) -> dict:
    """The fixed column order of every exported tau_c row."""
    return {"bea_codes": list(CUSTOM_BEA_ORDER), "count": len(CUSTOM_BEA_ORDER)}


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

@app.post("/sessions", status_code=201)
@limiter.limit("30/minute")
async def create_session(request: Request) -> JSONResponse:
    session = _store().create()
    logger.info(json.dumps({
        "event": "session_created",
        "session_prefix": session.session_id[:8],
        "request_id": getattr(request.state, "request_id", "unknown"),
    }))
    return JSONResponse(status_code=201, content={"session_id": session.session_id})


@app.delete("/sessions/{session_id}", status_code=204)
@limiter.limit("60/minute")
async def delete_session(session_id: str, request: Request) -> Response:
    if not _store().drop(session_id):
        raise HTTPException(status_code=404, detail=f"Session '{session_id}' not found.")
    return Response(status_code=204)


@app.post("/sessions/{session_id}/countries/{country_code}/select")
@limiter.limit("120/minute")
async def select(session_id: str, country_code: str, request: Request) -> dict:
    """Build the country's weight cache and baseline; seed current values
    in original_current mode."""
    session = _session(session_id)
    country_code = _validate_country_code(country_code)
    mode, _ = _mode_and_pass_through(await _json_body(request, required=False))

    async with session.lock:
        select_country(session.engine, country_code, mode)
        originals = len(session.engine.original_tariffs.get(country_code, {}))

    return {"country_code": country_code, "mode": mode, "original_keys": originals}


@app.post("/sessions/{session_id}/countries/{country_code}/tariffs")
@limiter.limit("600/minute")
async def edit_tariff(session_id: str, country_code: str, request: Request) -> JSONResponse:
    """Edit one node. Body: TariffEdit fields plus optional mode / pass_through."""
    session = _session(session_id)
    country_code = _validate_country_code(country_code)
    raw = await _json_body(request)
    try:
        edit = TariffEdit(**raw)
    except ValidationError as exc:
        raise InvalidTariffInput("Request validation failed.", _validation_details(exc))
    mode, pass_through = _mode_and_pass_through(raw)

    async with session.lock:
        engine = session.engine
        result = apply_edit(engine, country_code, edit, mode, pass_through)
        if result is None:
            return JSONResponse(
                status_code=422,
                content={
                    "error": "TARIFF_EDIT_REJECTED",
                    "message": "Node not found in the tariff hierarchy.",
                    "details": {
                        "level": edit.level,
                        "section_id": edit.section_id,
                        "chapter_id": edit.chapter_id,
                        "hs4_code": edit.hs4_code,
                    },
                },
            )
        value = engine.get_tariff_value(
            edit.level, edit.section_id, edit.chapter_id, edit.hs4_code,
            country_code, edit.tariff_type,
        )
        directly_set = engine.is_directly_set(
            edit.level, edit.section_id, edit.chapter_id, edit.hs4_code, country_code,
        )

    return JSONResponse(
        status_code=200,
        content={
            "country_code": country_code,
            "level": edit.level,
            "tariff_type": edit.tariff_type,
            "value": value,
            "directly_set": directly_set,
        },
    )


@app.get("/sessions/{session_id}/countries/{country_code}/tariffs")
@limiter.limit("600/minute")
async def read_tariff(
    session_id: str,
    country_code: str,
    request: Request,
    section_id: str = Query(...),
    level: str = Query(LEVEL_SECTION),
    chapter_id: Optional[str] = Query(None),
    hs4_code: Optional[str] = Query(None),
    tariff_type: str = Query(TARIFF_CURRENT),
) -> dict:
    session = _session(session_id)
    country_code = _validate_country_code(country_code)

    async with session.lock:
        try:
            value = session.engine.get_tariff_value(
                level, section_id, chapter_id, hs4_code, country_code, tariff_type,
            )
            directly_set = session.engine.is_directly_set(
                level, section_id, chapter_id, hs4_code, country_code,
            )
        except ValueError as exc:
            raise InvalidTariffInput(str(exc))

    return {"value": value, "directly_set": directly_set}


@app.post("/sessions/{session_id}/countries/{country_code}/export")
@limiter.limit("120/minute")
async def export(session_id: str, country_code: str, request: Request) -> JSONResponse:
    """Generate the country's percent-change row and return the bundle.

    Optional body: {"original_bea_tariffs": {bea: float}, "trade_weighted": bool}.
    """
    session = _session(session_id)
    country_code = _validate_country_code(country_code)
    raw = await _json_body(request, required=False)
    try:
        options = ExportOptions(**raw)
    except ValidationError as exc:
        raise InvalidTariffInput("Request validation failed.", _validation_details(exc))

    async with session.lock:
        try:
            bundle = session.engine.generate_tariff_data(country_code, options.original_bea_tariffs)
            if options.trade_weighted:
                bundle = apply_trade_weighting(bundle, _runtime["dataset"].bea_import_weights)
        except Exception as exc:
            return _computation_failed(request, exc, country_code=country_code)

    return JSONResponse(status_code=200, content=bundle.to_dict())


@app.delete("/sessions/{session_id}/countries/{country_code}", status_code=204)
@limiter.limit("120/minute")
async def clear_country(session_id: str, country_code: str, request: Request) -> Response:
    session = _session(session_id)
    country_code = _validate_country_code(country_code)
    async with session.lock:
        session.engine.clear_country_data(country_code)
    return Response(status_code=204)


@app.delete("/sessions/{session_id}/tariffs", status_code=204)
@limiter.limit("60/minute")
async def clear_all(session_id: str, request: Request) -> Response:
    session = _session(session_id)
    async with session.lock:
        session.engine.clear_all_data()
    return Response(status_code=204)


@app.post("/sessions/{session_id}/scenario")
@limiter.limit("60/minute")
async def scenario(session_id: str, request: Request) -> JSONResponse:
    """Run a ScenarioRequest against the session's engine."""
    session = _session(session_id)
    request_id: str = getattr(request.state, "request_id", "unknown")
    raw = await _json_body(request)
    try:
        req = ScenarioRequest(**raw)
    except ValidationError as exc:
        raise InvalidTariffInput("Request validation failed.", _validation_details(exc))
    _validate_country_code(req.country_code)

    async with session.lock:
        try:
            bundle = run_scenario(session.engine, req)
        except Exception as exc:
            return _computation_failed(request, exc, country_code=req.country_code)

    logger.info(json.dumps({
        "event": "scenario_success",
        "request_id": request_id,
        "session_prefix": session_id[:8],
        "country_code": req.country_code,
        "countries_exported": len(bundle.iso_list),
    }))
    return JSONResponse(status_code=200, content=bundle.to_dict())


# ---------------------------------------------------------------------------
# Entry point (development only)
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    try:
        import uvicorn
    except ImportError:
        print("Install uvicorn: pip install uvicorn", file=sys.stderr)
        sys.exit(1)

    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", "8000"))
    print(f"Tariff Propagation API {API_VERSION} on {host}:{port}, data from {DATA_DIR}")
    uvicorn.run(app, host=host, port=port, log_level="debug" if IS_DEV else "info")
