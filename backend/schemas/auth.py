"""Request and response bodies for the /auth endpoints.

JSON uses camelCase (``accessToken``, ``needsSetup``); requests also
accept the snake_case field names.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

_CAMEL_CONFIG = {"alias_generator": to_camel, "populate_by_name": True}


def _normalize_email(value):
    if isinstance(value, str):
        value = value.strip().lower()
        if "@" not in value or value.startswith("@") or value.endswith("@"):
            raise ValueError("Invalid email address")
    return value


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)

    model_config = _CAMEL_CONFIG

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _normalize_email(value)


class SetupRequest(BaseModel):
    """First-run administrator account. Strength rules are checked by the service."""

    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1, max_length=128)
    password_confirmation: str = Field(..., min_length=1, max_length=128)

    model_config = _CAMEL_CONFIG

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return _normalize_email(value)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str = Field(..., min_length=1, max_length=128)
    new_password_confirmation: str = Field(..., min_length=1, max_length=128)

    model_config = _CAMEL_CONFIG


class UserResponse(BaseModel):
    """User info response"""

    id: int
    email: str
    role: str
    auth_provider: str
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None

    model_config = {**_CAMEL_CONFIG, "from_attributes": True}


class CheckSetupResponse(BaseModel):
    needs_setup: bool

    model_config = _CAMEL_CONFIG


class AccessTokenResponse(BaseModel):
    """Access token returned by refresh. The refresh token only travels in the cookie."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int = Field(description="Access token expiration in seconds")

    model_config = _CAMEL_CONFIG


class AuthResponse(AccessTokenResponse):
    user: UserResponse


class ChangePasswordResponse(AccessTokenResponse):
    message: str


class SessionResponse(BaseModel):
    """One signed-in device, i.e. one active refresh token."""

    id: str
    family_id: str
    device_info: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
    expires_at: datetime
    is_current: bool = False

    model_config = {**_CAMEL_CONFIG, "from_attributes": True}


class SessionListResponse(BaseModel):
    sessions: List[SessionResponse]
    total: int

    model_config = _CAMEL_CONFIG


class MessageResponse(BaseModel):
    message: str


class AuthErrorResponse(BaseModel):
    """
    Error body for every authentication failure.

    ``errorCode`` is stable; ``SESSION_COMPROMISED`` tells the client to drop
    all local session state instead of silently retrying.
    """

    detail: str
    error_code: str
    retry_after: Optional[int] = None
    errors: Optional[List[str]] = None

    model_config = {
        **_CAMEL_CONFIG,
        "json_schema_extra": {
            "examples": [
                {"detail": "Invalid credentials", "errorCode": "INVALID_CREDENTIALS"},
                {
                    "detail": "Your session has been terminated for security reasons. Please log in again.",
                    "errorCode": "SESSION_COMPROMISED",
                },
                {"detail": "Too many failed attempts", "errorCode": "RATE_LIMITED", "retryAfter": 840},
            ]
        },
    }
