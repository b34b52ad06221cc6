"""
tariffprop.security — HTTP middleware for the tariff propagation service.

Provides:
    - RequestContextMiddleware: request id and session id on request.state,
      X-Request-ID echoed back, one structured access-log line per request
    - SecurityHeadersMiddleware: fixed OWASP header set plus a per-path
      cache policy (session state is never cacheable)
    - RequestSizeLimitMiddleware: 413 / 431 before the body is read
    - ETagMiddleware: conditional GET on the reference endpoints

Session ids are bearer-like secrets: access logs carry only a short prefix.
"""

from __future__ import annotations

import hashlib
import ipaddress
import json
import logging
import os
import re
import time
import uuid
from typing import Any, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger("tariffprop.http")


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

STATIC_PATHS = frozenset(("/", "/bea-codes"))
"""Reference data fixed per deploy: cacheable, ETag-able."""

SECURITY_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Cross-Origin-Resource-Policy": "same-site",
}

HSTS_VALUE = "max-age=31536000; includeSubDomains; preload"

MAX_BODY_BYTES: int = int(os.getenv("MAX_BODY_BYTES", "262144"))
"""Largest accepted request body. 256 KB holds a scenario with a few
thousand HS4 edits."""

MAX_HEADER_BYTES = 16_384

_SESSION_PATH_RE = re.compile(r"^/sessions/([^/]+)")


def cache_control_for(path: str) -> str:
    if path in STATIC_PATHS:
        return "public, max-age=3600"
    return "no-store"


def session_id_from_path(path: str) -> Optional[str]:
    match = _SESSION_PATH_RE.match(path)
    return match.group(1) if match else None


# ---------------------------------------------------------------------------
# Request context
# ---------------------------------------------------------------------------

class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id (client-supplied or generated) and the
    session it addresses, then write the access-log line."""

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:16]
        request.state.request_id = request_id
        request.state.session_id = session_id_from_path(request.url.path)

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        response.headers["X-Request-ID"] = request_id
        _access_log(request, response.status_code, elapsed_ms)
        return response


# ---------------------------------------------------------------------------
# Response headers
# ---------------------------------------------------------------------------

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Apply SECURITY_HEADERS and the path's cache policy to every response.

    HSTS is added only with enable_hsts (prod, TLS terminated upstream).
    """

    def __init__(self, app: Any, *, enable_hsts: bool = False) -> None:
        super().__init__(app)
        self.headers = dict(SECURITY_HEADERS)
        if enable_hsts:
            self.headers["Strict-Transport-Security"] = HSTS_VALUE

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        response = await call_next(request)
        response.headers.update(self.headers)
        response.headers["Cache-Control"] = cache_control_for(request.url.path)
        return response


# ---------------------------------------------------------------------------
# Size limits
# ---------------------------------------------------------------------------

class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Refuse oversized headers (431) or a declared body over max_body_bytes (413)."""

    def __init__(self, app: Any, *, max_body_bytes: int = MAX_BODY_BYTES) -> None:
        super().__init__(app)
        self.max_body_bytes = max_body_bytes

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        if sum(len(k) + len(v) for k, v in request.headers.raw) > MAX_HEADER_BYTES:
            return JSONResponse(status_code=431, content={"detail": "Request headers too large"})

        declared = request.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > self.max_body_bytes:
            return JSONResponse(
                status_code=413,
                content={"detail": "Request body too large", "limit_bytes": self.max_body_bytes},
            )

        return await call_next(request)


# ---------------------------------------------------------------------------
# Conditional GET
# ---------------------------------------------------------------------------

class ETagMiddleware(BaseHTTPMiddleware):
    """Weak ETag on 200 GET responses for STATIC_PATHS, 304 on a match."""

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        response = await call_next(request)
        if (
            request.method != "GET"
            or request.url.path not in STATIC_PATHS
            or response.status_code != 200
        ):
            return response

        body = b"".join([
            chunk if isinstance(chunk, bytes) else chunk.encode()
            async for chunk in response.body_iterator  # type: ignore[union-attr]
        ])
        etag = 'W/"%s"' % hashlib.sha256(body).hexdigest()[:32]

        candidates = {tag.strip() for tag in request.headers.get("if-none-match", "").split(",")}
        if etag in candidates or "*" in candidates:
            return Response(status_code=304, headers={"ETag": etag})

        headers = {k: v for k, v in response.headers.items() if k.lower() != "content-length"}
        headers["ETag"] = etag
        return Response(
            content=body,
            status_code=response.status_code,
            headers=headers,
            media_type=response.media_type,
        )


# ---------------------------------------------------------------------------
# Access log
# ---------------------------------------------------------------------------

def _mask_ip(ip: Optional[str]) -> str:
    """Reduce a client address to its /16 (IPv4) or /48 (IPv6) network."""
    if not ip:
        return "unknown"
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return "unknown"
    prefix = 16 if address.version == 4 else 48
    return str(ipaddress.ip_network(f"{address}/{prefix}", strict=False))


def _redact_path(path: str, session_id: Optional[str]) -> str:
    if not session_id:
        return path
    return path.replace(session_id, session_id[:8] + "…", 1)


def _access_log(request: Request, status_code: int, elapsed_ms: float) -> None:
    session_id = getattr(request.state, "session_id", None)
    entry = {
        "event": "http_request",
        "method": request.method,
        "path": _redact_path(request.url.path, session_id),
        "status": status_code,
        "latency_ms": round(elapsed_ms, 1),
        "client_net": _mask_ip(request.client.host if request.client else None),
        "request_id": request.state.request_id,
    }
    level = logging.ERROR if status_code >= 500 else logging.WARNING if status_code >= 400 else logging.INFO
    logger.log(level, json.dumps(entry, ensure_ascii=False))
