"""Per-request access log for development.

One line per request: request id, method, path, proxy-aware client IP,
status and duration. Bodies, cookies and Authorization headers are never
logged, so passwords and refresh secrets stay out of the log.

IMPORTANT: Only enabled in development mode (see main.py).
"""

import logging
import re
import time
import uuid
from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from middleware.rate_limit import get_client_ip

logger = logging.getLogger("api.requests")

REQUEST_ID_HEADER = "X-Request-ID"

# Noisy endpoints
EXCLUDED_PATHS = {
    "/health",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/favicon.ico",
}

# A client-supplied id is reused only if it cannot smuggle anything into the log line
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9-]{1,64}$")


def _request_id(request: Request) -> str:
    incoming = request.headers.get(REQUEST_ID_HEADER, "")
    if _REQUEST_ID_RE.match(incoming):
        return incoming
    return uuid.uuid4().hex[:8]


def _level_for(status_code: int, method: str) -> int:
    if status_code >= 500:
        return logging.ERROR
    # Failed logins, rejected refreshes and lockouts should stand out
    if status_code >= 400:
        return logging.WARNING
    if method == "GET":
        return logging.DEBUG
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in EXCLUDED_PATHS:
            return await call_next(request)

        request_id = _request_id(request)
        started = time.perf_counter()
        request_desc = (
            f"[{request_id}] {request.method} {request.url.path} "
            f"client={get_client_ip(request)}"
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"{request_desc} - ERROR ({time.perf_counter() - started:.3f}s): {e}")
            raise

        logger.log(
            _level_for(response.status_code, request.method),
            f"{request_desc} - {response.status_code} ({time.perf_counter() - started:.3f}s)",
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def configure_request_logging(log_level: str = "INFO") -> None:
    """Give the access log its own handler and level. Call once at startup."""
    request_logger = logging.getLogger("api.requests")
    request_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    # Prevent duplicate emission via root logger handlers.
    request_logger.propagate = False

    if not request_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        request_logger.addHandler(handler)
