"""Persistence for refresh token rows.

The one place where ORM "load, mutate, save" is NOT used is
``revoke_if_active``: single-use enforcement needs the check and the write
to be one statement, so two requests racing on the same token can never both
see it as active.
"""

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import and_, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from models.refresh_token import RefreshToken, new_token_id


def hash_token(token: str) -> str:
    """SHA-256 of the opaque refresh secret. High-entropy input, so no salt."""
    return hashlib.sha256(token.encode()).hexdigest()


def generate_token_secret() -> str:
    return secrets.token_urlsafe(48)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything is stored as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def is_expired(token: RefreshToken, now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc)
    return as_utc(token.expires_at) <= now


class RefreshTokenStore:
    """Data access for ``refresh_tokens``. Flushes, never commits."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        user_id: int,
        secret: str,
        expires_at: datetime,
        family_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> RefreshToken:
        """
        Insert a new active token. Without ``family_id`` the token starts a
        new family named after its own id.
        """
        token_id = new_token_id()
        token = RefreshToken(
            id=token_id,
            family_id=family_id or token_id,
            user_id=user_id,
            token_hash=hash_token(secret),
            revoked=False,
            expires_at=expires_at,
            ip_address=ip_address[:45] if ip_address else None,
            device_info=device_info[:200] if device_info else None,
        )
        self.db.add(token)
        await self.db.flush()
        return token

    async def find_by_secret(self, secret: str) -> Optional[RefreshToken]:
        result = await self.db.execute(
            select(RefreshToken).where(RefreshToken.token_hash == hash_token(secret))
        )
        return result.scalar_one_or_none()

    async def get(self, token_id: str) -> Optional[RefreshToken]:
        """Load a token, overwriting any stale copy held by this session."""
        result = await self.db.execute(
            select(RefreshToken)
            .where(RefreshToken.id == token_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def revoke_if_active(self, token_id: str, reason: str) -> bool:
        """
        Atomically revoke a token only if it is still active.

        Returns True when this call flipped the row, False when it was already
        revoked (by a rotation, logout, password change or an earlier theft).
        """
        now = datetime.now(timezone.utc)
        result = await self.db.execute(
            update(RefreshToken)
            .where(
                and_(
                    RefreshToken.id == token_id,
                    RefreshToken.revoked == False,  # noqa: E712
                )
            )
            .values(
                revoked=True,
                revocation_reason=reason,
                revoked_at=now,
                last_used_at=now,
            )
            .returning(RefreshToken.id)
            .execution_options(synchronize_session=False)
        )
        revoked_id = result.scalar_one_or_none()
        await self.db.flush()
        return revoked_id is not None

    async def revoke_family(self, family_id: str, reason: str) -> int:
        """Revoke every still-active token of a family. Returns the count."""
        result = await self.db.execute(
            update(RefreshToken)
            .where(
                and_(
                    RefreshToken.family_id == family_id,
                    RefreshToken.revoked == False,  # noqa: E712
                )
            )
            .values(
                revoked=True,
                revocation_reason=reason,
                revoked_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.flush()
        return result.rowcount

    async def revoke_all_for_user(self, user_id: int, reason: str) -> int:
        """Revoke every still-active token of a user, across all families."""
        result = await self.db.execute(
            update(RefreshToken)
            .where(
                and_(
                    RefreshToken.user_id == user_id,
                    RefreshToken.revoked == False,  # noqa: E712
                )
            )
            .values(
                revoked=True,
                revocation_reason=reason,
                revoked_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.flush()
        return result.rowcount

    async def list_active_for_user(self, user_id: int) -> list[RefreshToken]:
        result = await self.db.execute(
            select(RefreshToken)
            .where(
                and_(
                    RefreshToken.user_id == user_id,
                    RefreshToken.revoked == False,  # noqa: E712
                    RefreshToken.expires_at > datetime.now(timezone.utc),
                )
            )
            .order_by(RefreshToken.created_at.desc())
        )
        return list(result.scalars().all())

    async def delete_expired(self, grace: timedelta) -> int:
        """Hard-delete tokens that expired more than ``grace`` ago."""
        cutoff = datetime.now(timezone.utc) - grace
        result = await self.db.execute(
            delete(RefreshToken)
            .where(RefreshToken.expires_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        await self.db.flush()
        return result.rowcount
