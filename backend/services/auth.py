"""Authentication service: login, refresh, logout, password change, setup.

Composes the login rate limiter, the password hasher and the refresh token
family engine into the session lifecycle, and issues short-lived JWT
access tokens alongside the opaque refresh tokens.

Blast radius of each security event:

- logout: the presented refresh token only
- reuse of a revoked refresh token: its whole family
- password change: every token the user holds, across all families
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from db.database import get_db
from middleware.rate_limit import (
    UNKNOWN_IP,
    AccountLockStatus,
    LoginRateLimiter,
    RateLimitDecision,
)
from models.auth_audit import AuthAuditLog
from models.refresh_token import RefreshToken, RevocationReason
from models.user import AuthProvider, User, UserRole
from services.audit import AuditService
from services.errors import (
    AccountLocked,
    InvalidCredentials,
    InvalidToken,
    PasswordMismatch,
    PasswordReuse,
    RateLimited,
    SessionCompromised,
    SetupAlreadyCompleted,
    WeakPassword,
)
from services.password import PasswordHasher, validate_password_strength
from services.token_family import IssuedRefreshToken, TokenFamilyEngine

security = HTTPBearer(auto_error=False)
logger = logging.getLogger(__name__)


@dataclass
class SessionTokens:
    """Access token plus the refresh secret for the cookie."""

    user: User
    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime

    @property
    def expires_in(self) -> int:
        remaining = (self.access_token_expires_at - datetime.now(timezone.utc)).total_seconds()
        return max(0, int(remaining))


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _create_access_token_data(
    user: User,
    settings: Optional[Settings] = None,
    expires_delta: Optional[timedelta] = None,
) -> tuple[str, str, datetime]:
    """
    Create JWT access token for user.

    Returns:
        Tuple of (token, jti, expiration_datetime)
    """
    settings = settings or get_settings()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))

    jti = str(uuid4())
    to_encode = {
        "sub": str(user.id),
        "email": user.email,
        "role": user.role,
        "exp": expire,
        "iat": now,
        "iss": settings.JWT_ISSUER,
        "aud": settings.JWT_AUDIENCE,
        "jti": jti,
        "type": "access",
    }
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt, jti, expire


def decode_token(token: str, expected_type: str = "access") -> Optional[dict]:
    """
    Verify JWT token and return payload if valid.

    Returns:
        Token payload dict if valid, None otherwise
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
        )
        if payload.get("type") != expected_type:
            return None
        return payload
    except JWTError:
        return None


def _retry_minutes(retry_after: int) -> int:
    return max(1, math.ceil(retry_after / 60))


class AuthSessionService:
    """Orchestrates the externally visible session lifecycle. Commits its own work."""

    def __init__(
        self,
        db: AsyncSession,
        rate_limiter: LoginRateLimiter,
        hasher: Optional[PasswordHasher] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.rate_limiter = rate_limiter
        self.hasher = hasher or PasswordHasher(self.settings.BCRYPT_ROUNDS)
        self.audit = AuditService(db)
        self.families = TokenFamilyEngine(db, settings=self.settings, audit=self.audit)

    async def _get_user_by_email(self, email: str) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.email == normalize_email(email)))
        return result.scalar_one_or_none()

    def _build_session(self, user: User, issued: IssuedRefreshToken) -> SessionTokens:
        access_token, _, access_expires = _create_access_token_data(user, self.settings)
        return SessionTokens(
            user=user,
            access_token=access_token,
            access_token_expires_at=access_expires,
            refresh_token=issued.secret,
            refresh_token_expires_at=issued.expires_at,
        )

    async def _start_session(
        self, user: User, ip_address: Optional[str], user_agent: Optional[str]
    ) -> SessionTokens:
        issued = await self.families.issue_initial_token(
            user.id, ip_address=ip_address, device_info=user_agent
        )
        return self._build_session(user, issued)

    async def check_setup(self) -> bool:
        """True while no user exists and first-run setup is still open."""
        result = await self.db.execute(select(func.count(User.id)))
        return result.scalar_one() == 0

    async def setup(
        self,
        email: str,
        password: str,
        password_confirmation: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionTokens:
        """Create the first account as administrator and sign it in."""
        if not await self.check_setup():
            raise SetupAlreadyCompleted()

        if password != password_confirmation:
            raise PasswordMismatch()

        strength = validate_password_strength(password)
        if not strength.valid:
            raise WeakPassword(errors=strength.errors)

        user = User(
            email=normalize_email(email),
            password_hash=await self.hasher.hash(password),
            role=UserRole.ADMINISTRATOR.value,
            auth_provider=AuthProvider.LOCAL.value,
            last_login=datetime.now(timezone.utc),
        )
        self.db.add(user)
        await self.db.flush()

        tokens = await self._start_session(user, ip_address, user_agent)
        await self.audit.log(
            AuthAuditLog.ACTION_SETUP,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self.db.commit()
        logger.info(f"Initial administrator created: user_id={user.id}")
        return tokens

    async def _reject_rate_limited(
        self, decision: RateLimitDecision, ip_address: str, user_agent: Optional[str]
    ) -> RateLimited:
        await self.audit.log(
            AuthAuditLog.ACTION_RATE_LIMITED,
            ip_address=ip_address,
            user_agent=user_agent,
            success=False,
            error_message="IP rate limit exceeded",
        )
        await self.db.commit()
        return RateLimited(
            f"Too many failed attempts. Please try again in "
            f"{_retry_minutes(decision.retry_after)} minutes.",
            retry_after=decision.retry_after,
        )

    async def _reject_locked(
        self, lock: AccountLockStatus, email: str, ip_address: str, user_agent: Optional[str]
    ) -> AccountLocked:
        await self.audit.log(
            AuthAuditLog.ACTION_ACCOUNT_LOCKED,
            ip_address=ip_address,
            user_agent=user_agent,
            success=False,
            error_message="Account locked",
            metadata={"email": email},
        )
        await self.db.commit()
        return AccountLocked(
            f"Account temporarily locked due to multiple failed login attempts. "
            f"Please try again in {_retry_minutes(lock.retry_after)} minutes.",
            retry_after=lock.retry_after,
        )

    async def login(
        self,
        email: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionTokens:
        """
        Authenticate with e-mail and password.

        The IP limit is checked first; the account lock is only consulted
        for IPs that are not limited, so a limited client learns nothing
        about the account.

        The attempt is counted as a failure before the password is verified
        and cleared again on a match, so concurrent guesses get at most the
        configured number of password checks per window.
        """
        ip_address = ip_address or UNKNOWN_IP
        email = normalize_email(email)

        decision = await self.rate_limiter.check_ip_rate_limit(ip_address)
        if not decision.allowed:
            raise await self._reject_rate_limited(decision, ip_address, user_agent)

        lock = await self.rate_limiter.check_account_lock(email)
        if lock.locked:
            raise await self._reject_locked(lock, email, ip_address, user_agent)

        outcome = await self.rate_limiter.record_failure(ip_address, email)
        if not outcome.ip.allowed:
            raise await self._reject_rate_limited(outcome.ip, ip_address, user_agent)
        if outcome.account.locked:
            raise await self._reject_locked(outcome.account, email, ip_address, user_agent)

        user = await self._get_user_by_email(email)
        if user is None or not user.has_password:
            await self.hasher.verify_dummy(password)
            valid = False
        else:
            valid = await self.hasher.verify(password, user.password_hash)

        if not valid:
            await self.audit.log(
                AuthAuditLog.ACTION_FAILED_LOGIN,
                user_id=user.id if user else None,
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
                error_message="Invalid credentials",
                metadata={"email": email},
            )
            await self.db.commit()
            logger.warning(f"Failed login attempt from {ip_address}")
            raise InvalidCredentials()

        await self.rate_limiter.record_success(ip_address, email)
        user.last_login = datetime.now(timezone.utc)
        tokens = await self._start_session(user, ip_address, user_agent)
        await self.audit.log(
            AuthAuditLog.ACTION_LOGIN,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self.db.commit()
        return tokens

    async def refresh(
        self,
        refresh_token: Optional[str],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionTokens:
        """
        Rotate the refresh token and mint a new access token.

        On reuse the family revocation is committed before SessionCompromised
        propagates, so the cascade survives the error response.
        """
        if not refresh_token:
            raise InvalidToken("Refresh token required")

        try:
            issued = await self.families.rotate(
                refresh_token, ip_address=ip_address, device_info=user_agent
            )
        except SessionCompromised:
            await self.db.commit()
            raise

        user = await self.db.get(User, issued.record.user_id)
        if user is None:
            await self.db.rollback()
            raise InvalidToken()

        tokens = self._build_session(user, issued)
        await self.audit.log(
            AuthAuditLog.ACTION_TOKEN_REFRESH,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"family_id": issued.family_id},
        )
        await self.db.commit()
        return tokens

    async def logout(
        self,
        refresh_token: Optional[str],
        user: User,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Revoke only the presented refresh token. Safe to repeat."""
        revoked = False
        if refresh_token:
            revoked = await self.families.revoke_token(
                refresh_token, RevocationReason.LOGOUT.value, user_id=user.id
            )

        await self.audit.log(
            AuthAuditLog.ACTION_LOGOUT,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"token_revoked": revoked},
        )
        await self.db.commit()
        return revoked

    async def change_password(
        self,
        user: User,
        current_password: str,
        new_password: str,
        new_password_confirmation: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionTokens:
        """
        Replace the password and sign out every session of the user.

        The calling client gets a brand-new family so it stays signed in.
        """
        if new_password != new_password_confirmation:
            raise PasswordMismatch("New password and confirmation do not match")

        if new_password == current_password:
            raise PasswordReuse()

        strength = validate_password_strength(new_password)
        if not strength.valid:
            raise WeakPassword(errors=strength.errors)

        if not user.has_password or not await self.hasher.verify(
            current_password, user.password_hash
        ):
            await self.audit.log(
                AuthAuditLog.ACTION_PASSWORD_CHANGE,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
                error_message="Current password is incorrect",
            )
            await self.db.commit()
            raise InvalidCredentials("Current password is incorrect")

        user.password_hash = await self.hasher.hash(new_password)
        revoked = await self.families.revoke_all_for_user(
            user.id, RevocationReason.PASSWORD_CHANGE.value
        )
        tokens = await self._start_session(user, ip_address, user_agent)
        await self.audit.log(
            AuthAuditLog.ACTION_PASSWORD_CHANGE,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"sessions_revoked": revoked},
        )
        await self.db.commit()
        logger.info(f"Password changed for user {user.id}; revoked {revoked} refresh token(s)")
        return tokens

    async def get_user(self, user_id: int) -> Optional[User]:
        return await self.db.get(User, user_id)

    async def list_sessions(self, user_id: int) -> list[RefreshToken]:
        """Signed-in devices of a user: unrevoked, unexpired refresh tokens, newest first."""
        return await self.families.store.list_active_for_user(user_id)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Dependency to get current authenticated user from JWT token."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        raise credentials_exception

    payload = decode_token(credentials.credentials.strip(), expected_type="access")
    if payload is None:
        raise credentials_exception

    user_id = payload.get("sub")
    if user_id is None:
        raise credentials_exception

    try:
        user_id = int(user_id)
    except (TypeError, ValueError):
        raise credentials_exception

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if user is None:
        raise credentials_exception

    return user
