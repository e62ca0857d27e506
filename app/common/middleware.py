"""
Middleware HTTP: trazabilidad de peticiones y cabeceras de seguridad
"""
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from uuid import uuid4
import logging
import time

logger = logging.getLogger(__name__)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that assigns a request id (or reuses X-Request-ID from the
    client) and logs method, path, status and duration of every request
    """

    # Paths that are not worth logging
    QUIET_PATHS = [
        "/health",
        "/docs",
        "/redoc",
        "/openapi.json",
    ]

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid4().hex
        request.state.request_id = request_id

        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        if not any(request.url.path.startswith(path) for path in self.QUIET_PATHS):
            logger.info(
                f"[{request_id}] {request.method} {request.url.path} -> "
                f"{response.status_code} ({elapsed_ms:.1f} ms)"
            )

        response.headers["X-Request-ID"] = request_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add security headers for production
    """

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # PDFs are served from presigned URLs, the API itself never embeds content
        response.headers["Content-Security-Policy"] = "frame-ancestors 'none'"

        return response
