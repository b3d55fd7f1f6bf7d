from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_db
from middleware.rate_limit import LoginRateLimiter
from models.user import User
from services.auth import AuthSessionService, get_current_user
from services.password import PasswordHasher


def get_login_rate_limiter(request: Request) -> LoginRateLimiter:
    """The per-process limiter built in the app lifespan."""
    return request.app.state.login_rate_limiter


def get_password_hasher(request: Request) -> PasswordHasher:
    return request.app.state.password_hasher


async def get_auth_service(
    db: AsyncSession = Depends(get_db),
    rate_limiter: LoginRateLimiter = Depends(get_login_rate_limiter),
    hasher: PasswordHasher = Depends(get_password_hasher),
) -> AuthSessionService:
    return AuthSessionService(db, rate_limiter, hasher=hasher)


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    """Only administrators get through."""
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Administrator access required",
        )
    return current_user
