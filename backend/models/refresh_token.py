"""Refresh token storage model for rotation with token families."""

import uuid
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.database import Base


class RevocationReason(str, Enum):
    ROTATION = "rotation"
    LOGOUT = "logout"
    PASSWORD_CHANGE = "password_change"
    THEFT_DETECTED = "theft_detected"


def new_token_id() -> str:
    return str(uuid.uuid4())


class RefreshToken(Base):
    """
    One issued refresh credential.

    The opaque secret handed to the client is stored only as a SHA-256 hash.
    Every token descended from one login shares ``family_id`` (the first
    token's own id), so a whole family can be revoked with a single UPDATE.

    Rows are never edited except to flip ``revoked`` / ``revocation_reason``
    and to stamp ``revoked_at`` / ``last_used_at``.
    """

    __tablename__ = "refresh_tokens"

    id = Column(String(36), primary_key=True, default=new_token_id)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)  # SHA-256 hash
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    family_id = Column(String(36), nullable=False, index=True)
    revoked = Column(Boolean, default=False, nullable=False)
    revocation_reason = Column(String(50), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    device_info = Column(String(200), nullable=True)  # User-Agent
    ip_address = Column(String(45), nullable=True)  # IPv4 or IPv6 address

    user = relationship("User", back_populates="refresh_tokens")

    __table_args__ = (
        Index("ix_refresh_tokens_user_expires", "user_id", "expires_at"),
        Index("ix_refresh_tokens_family_revoked", "family_id", "revoked"),
    )

    def __repr__(self):
        return (
            f"<RefreshToken(id={self.id}, user_id={self.user_id}, "
            f"family_id={self.family_id}, revoked={self.revoked})>"
        )
