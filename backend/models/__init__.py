from .auth_audit import AuthAuditLog
from .refresh_token import RefreshToken, RevocationReason
from .user import AuthProvider, User, UserRole

__all__ = [
    "AuthAuditLog",
    "AuthProvider",
    "RefreshToken",
    "RevocationReason",
    "User",
    "UserRole",
]
