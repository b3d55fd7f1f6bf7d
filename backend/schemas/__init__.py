from .auth import (
    AccessTokenResponse,
    AuthErrorResponse,
    AuthResponse,
    ChangePasswordRequest,
    ChangePasswordResponse,
    CheckSetupResponse,
    LoginRequest,
    MessageResponse,
    SessionListResponse,
    SessionResponse,
    SetupRequest,
    UserResponse,
)

__all__ = [
    # Requests
    "ChangePasswordRequest",
    "LoginRequest",
    "SetupRequest",
    # Responses
    "AccessTokenResponse",
    "AuthErrorResponse",
    "AuthResponse",
    "ChangePasswordResponse",
    "CheckSetupResponse",
    "MessageResponse",
    "SessionListResponse",
    "SessionResponse",
    "UserResponse",
]
