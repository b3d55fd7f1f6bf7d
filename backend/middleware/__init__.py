"""Middleware package for security headers, request logging and login rate limiting."""

from .rate_limit import LoginRateLimiter, get_client_ip
from .security import SecurityHeadersMiddleware

__all__ = [
    "LoginRateLimiter",
    "SecurityHeadersMiddleware",
    "get_client_ip",
]
