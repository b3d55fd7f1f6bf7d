"""Refresh token families: issue, rotate, revoke, detect reuse.

A family is every token descended from one login. It is a flat tag
(``family_id``) rather than a parent/child chain, so "revoke the whole
family" is a single UPDATE.

Token states::

    active -> rotated | logged_out | superseded_by_password_change | theft_detected

All revoked states are terminal. Presenting a revoked token again means
the secret leaked: the family is revoked with ``theft_detected`` and the
caller gets ``SessionCompromised`` instead of a plain 401.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from models.auth_audit import AuthAuditLog
from models.refresh_token import RefreshToken, RevocationReason
from services.audit import AuditService
from services.errors import InvalidToken, SessionCompromised
from services.token_store import RefreshTokenStore, generate_token_secret, is_expired

logger = logging.getLogger(__name__)


@dataclass
class IssuedRefreshToken:
    """A freshly stored token plus the only copy of its plaintext secret."""

    record: RefreshToken
    secret: str

    @property
    def expires_at(self) -> datetime:
        return self.record.expires_at

    @property
    def family_id(self) -> str:
        return self.record.family_id


class TokenFamilyEngine:
    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        store: Optional[RefreshTokenStore] = None,
        audit: Optional[AuditService] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.store = store or RefreshTokenStore(db)
        self.audit = audit or AuditService(db)

    @property
    def ttl(self) -> timedelta:
        return timedelta(days=self.settings.REFRESH_TOKEN_EXPIRE_DAYS)

    async def _issue(
        self,
        user_id: int,
        family_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> IssuedRefreshToken:
        secret = generate_token_secret()
        record = await self.store.create(
            user_id=user_id,
            secret=secret,
            expires_at=datetime.now(timezone.utc) + self.ttl,
            family_id=family_id,
            ip_address=ip_address,
            device_info=device_info,
        )
        return IssuedRefreshToken(record=record, secret=secret)

    async def issue_initial_token(
        self,
        user_id: int,
        ip_address: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> IssuedRefreshToken:
        """Start a new family for a login."""
        return await self._issue(user_id, ip_address=ip_address, device_info=device_info)

    async def rotate(
        self,
        secret: str,
        ip_address: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> IssuedRefreshToken:
        """
        Exchange a refresh token for a new one in the same family.

        Raises:
            InvalidToken: unknown or expired token; the family is untouched.
            SessionCompromised: the token had already been revoked.
        """
        token = await self.store.find_by_secret(secret)
        if token is None or is_expired(token):
            raise InvalidToken()

        token_id = token.id
        user_id = token.user_id
        family_id = token.family_id

        owned = await self.store.revoke_if_active(token_id, RevocationReason.ROTATION.value)
        if not owned:
            await self._handle_reuse(token_id, user_id, family_id, ip_address, device_info)

        return await self._issue(
            user_id,
            family_id=family_id,
            ip_address=ip_address,
            device_info=device_info,
        )

    async def _handle_reuse(
        self,
        token_id: str,
        user_id: int,
        family_id: str,
        ip_address: Optional[str],
        device_info: Optional[str],
    ) -> None:
        if not self.settings.THEFT_DETECTION_ENABLED:
            raise InvalidToken()

        current = await self.store.get(token_id)
        original_reason = current.revocation_reason if current is not None else None

        logger.error(
            f"SECURITY ALERT: refresh token reuse detected for user {user_id} "
            f"(family={family_id}, token={token_id}, ip={ip_address}, "
            f"original_reason={original_reason})",
            extra={
                "event": "refresh_token_theft_detected",
                "userId": user_id,
                "familyId": family_id,
                "tokenId": token_id,
                "ipAddress": ip_address,
                "originalRevocationReason": original_reason,
            },
        )

        invalidated = 0
        if self.settings.THEFT_DETECTION_INVALIDATE_FAMILY:
            invalidated = await self.store.revoke_family(
                family_id, RevocationReason.THEFT_DETECTED.value
            )
            logger.warning(
                f"Invalidated {invalidated} token(s) in family {family_id} after reuse",
                extra={
                    "event": "token_family_invalidated",
                    "userId": user_id,
                    "familyId": family_id,
                    "tokensInvalidated": invalidated,
                },
            )

        await self.audit.log(
            AuthAuditLog.ACTION_THEFT_DETECTED,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=device_info,
            success=False,
            error_message="Revoked refresh token presented again",
            metadata={
                "token_id": token_id,
                "family_id": family_id,
                "original_revocation_reason": original_reason,
                "tokens_invalidated": invalidated,
            },
        )
        raise SessionCompromised()

    async def revoke_token(self, secret: str, reason: str, user_id: Optional[int] = None) -> bool:
        """
        Revoke one token by its secret. Idempotent: an unknown or already
        revoked token returns False. With ``user_id`` only that user's
        token is touched.
        """
        token = await self.store.find_by_secret(secret)
        if token is None:
            return False
        if user_id is not None and token.user_id != user_id:
            return False
        return await self.store.revoke_if_active(token.id, reason)

    async def revoke_family(self, family_id: str, reason: str) -> int:
        return await self.store.revoke_family(family_id, reason)

    async def revoke_all_for_user(self, user_id: int, reason: str) -> int:
        return await self.store.revoke_all_for_user(user_id, reason)
