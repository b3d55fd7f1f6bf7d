import logging
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse

from api.dependencies import get_auth_service, require_admin
from config import get_settings
from middleware.rate_limit import get_client_ip
from models.refresh_token import RefreshToken
from models.user import User
from schemas.auth import (
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
from services.auth import AuthSessionService, SessionTokens, get_current_user
from services.errors import AuthError
from services.token_store import hash_token

settings = get_settings()
logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

_ERROR_RESPONSES = {
    401: {"model": AuthErrorResponse},
    423: {"model": AuthErrorResponse},
    429: {"model": AuthErrorResponse},
}


def auth_error_response(exc: AuthError) -> JSONResponse:
    """JSON body for an AuthError, with Retry-After for 423/429."""
    headers = {}
    if exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def get_client_info(request: Request) -> tuple[str, Optional[str]]:
    """Client IP (proxy-aware) and User-Agent."""
    return get_client_ip(request), request.headers.get("User-Agent")


def _set_refresh_cookie(response: Response, tokens: SessionTokens) -> None:
    response.set_cookie(
        key=settings.REFRESH_COOKIE_NAME,
        value=tokens.refresh_token,
        httponly=True,
        secure=settings.effective_cookie_secure,
        samesite=settings.effective_cookie_samesite,
        max_age=settings.REFRESH_TOKEN_EXPIRE_DAYS * 24 * 60 * 60,
        path="/",
        domain=settings.COOKIE_DOMAIN,
    )


def _clear_refresh_cookie(response: Response) -> None:
    response.delete_cookie(
        key=settings.REFRESH_COOKIE_NAME,
        path="/",
        domain=settings.COOKIE_DOMAIN,
        secure=settings.effective_cookie_secure,
        httponly=True,
        samesite=settings.effective_cookie_samesite,
    )


def _auth_response(tokens: SessionTokens) -> AuthResponse:
    return AuthResponse(
        access_token=tokens.access_token,
        expires_in=tokens.expires_in,
        user=UserResponse.model_validate(tokens.user),
    )


@router.get("/check-setup", response_model=CheckSetupResponse)
async def check_setup(service: AuthSessionService = Depends(get_auth_service)):
    """Whether first-run setup is still needed (no user exists yet)."""
    return CheckSetupResponse(needs_setup=await service.check_setup())


@router.post(
    "/setup",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": AuthErrorResponse}, 403: {"model": AuthErrorResponse}},
)
async def setup(
    body: SetupRequest,
    request: Request,
    response: Response,
    service: AuthSessionService = Depends(get_auth_service),
):
    """
    Create the initial administrator account.

    Only allowed while no user exists. Signs the new administrator in.
    """
    ip_address, user_agent = get_client_info(request)
    tokens = await service.setup(
        body.email,
        body.password,
        body.password_confirmation,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    _set_refresh_cookie(response, tokens)
    return _auth_response(tokens)


@router.post("/login", response_model=AuthResponse, responses=_ERROR_RESPONSES)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    service: AuthSessionService = Depends(get_auth_service),
):
    """
    Login with e-mail and password.

    Returns a JWT access token; the refresh token is set as an httpOnly cookie.
    """
    ip_address, user_agent = get_client_info(request)
    tokens = await service.login(
        body.email, body.password, ip_address=ip_address, user_agent=user_agent
    )
    _set_refresh_cookie(response, tokens)
    return _auth_response(tokens)


@router.post("/refresh", response_model=AccessTokenResponse, responses=_ERROR_RESPONSES)
async def refresh(
    request: Request,
    response: Response,
    refresh_token: Optional[str] = Cookie(None, alias=settings.REFRESH_COOKIE_NAME),
    service: AuthSessionService = Depends(get_auth_service),
):
    """
    Rotate the refresh token cookie and return a new access token.

    Any failure clears the cookie. A reused token answers with
    ``errorCode: SESSION_COMPROMISED`` so the client can force a full logout.
    """
    ip_address, user_agent = get_client_info(request)
    try:
        tokens = await service.refresh(refresh_token, ip_address=ip_address, user_agent=user_agent)
    except AuthError as exc:
        error_response = auth_error_response(exc)
        _clear_refresh_cookie(error_response)
        return error_response

    _set_refresh_cookie(response, tokens)
    return AccessTokenResponse(access_token=tokens.access_token, expires_in=tokens.expires_in)


@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    response: Response,
    refresh_token: Optional[str] = Cookie(None, alias=settings.REFRESH_COOKIE_NAME),
    current_user: User = Depends(get_current_user),
    service: AuthSessionService = Depends(get_auth_service),
):
    """Revoke this session's refresh token and clear the cookie."""
    ip_address, user_agent = get_client_info(request)
    await service.logout(refresh_token, current_user, ip_address=ip_address, user_agent=user_agent)
    _clear_refresh_cookie(response)
    return MessageResponse(message="Logged out successfully")


@router.post(
    "/change-password",
    response_model=ChangePasswordResponse,
    responses={400: {"model": AuthErrorResponse}, 401: {"model": AuthErrorResponse}},
)
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    response: Response,
    current_user: User = Depends(get_current_user),
    service: AuthSessionService = Depends(get_auth_service),
):
    """
    Change the password and invalidate every other session.

    The caller receives a fresh access token and refresh cookie.
    """
    ip_address, user_agent = get_client_info(request)
    tokens = await service.change_password(
        current_user,
        body.current_password,
        body.new_password,
        body.new_password_confirmation,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    _set_refresh_cookie(response, tokens)
    return ChangePasswordResponse(
        message="Password changed successfully. All other sessions have been invalidated.",
        access_token=tokens.access_token,
        expires_in=tokens.expires_in,
    )


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    """Get current user info."""
    return UserResponse.model_validate(current_user)


def _session_list(tokens: list[RefreshToken], refresh_token: Optional[str]) -> SessionListResponse:
    current_hash = hash_token(refresh_token) if refresh_token else None
    sessions = [
        SessionResponse.model_validate(token).model_copy(
            update={"is_current": token.token_hash == current_hash}
        )
        for token in tokens
    ]
    return SessionListResponse(sessions=sessions, total=len(sessions))


@router.get("/sessions", response_model=SessionListResponse)
async def get_sessions(
    refresh_token: Optional[str] = Cookie(None, alias=settings.REFRESH_COOKIE_NAME),
    current_user: User = Depends(get_current_user),
    service: AuthSessionService = Depends(get_auth_service),
):
    """
    Active sessions of the current user.

    Each session is a device or browser holding an unrevoked refresh token;
    the one presenting the cookie is marked ``isCurrent``.
    """
    tokens = await service.list_sessions(current_user.id)
    return _session_list(tokens, refresh_token)


@router.get("/users/{user_id}/sessions", response_model=SessionListResponse)
async def get_user_sessions(
    user_id: int,
    admin: User = Depends(require_admin),
    service: AuthSessionService = Depends(get_auth_service),
):
    """Active sessions of any user (administrators only)."""
    if await service.get_user(user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    tokens = await service.list_sessions(user_id)
    return _session_list(tokens, None)
