import json
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.database import Base


class AuthAuditLog(Base):
    """
    Append-only trail of security events: setup, logins and failures,
    rate limiting and lockouts, refreshes, token reuse, logouts and
    password changes.

    Rows outlive their user (``user_id`` is nulled on delete) so an
    investigation can still see what happened to a removed account.
    """

    __tablename__ = "auth_audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    action = Column(String(50), nullable=False, index=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    success = Column(Boolean, default=True, nullable=False)
    error_message = Column(Text, nullable=True)
    metadata_json = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    # Null for failed attempts against unknown e-mails and for IP-level rejections
    user = relationship("User", back_populates="auth_audit_logs")

    __table_args__ = (
        Index("ix_auth_audit_user_action", "user_id", "action"),
        Index("ix_auth_audit_action_created", "action", "created_at"),
    )

    ACTION_SETUP = "setup"
    ACTION_LOGIN = "login"
    ACTION_FAILED_LOGIN = "failed_login"
    ACTION_RATE_LIMITED = "rate_limited"
    ACTION_ACCOUNT_LOCKED = "account_locked"
    ACTION_TOKEN_REFRESH = "token_refresh"
    ACTION_THEFT_DETECTED = "theft_detected"
    ACTION_LOGOUT = "logout"
    ACTION_PASSWORD_CHANGE = "password_change"

    @property
    def details(self) -> Optional[dict]:
        if not self.metadata_json:
            return None
        return json.loads(self.metadata_json)

    def __repr__(self):
        return f"<AuthAuditLog(id={self.id}, action='{self.action}', user_id={self.user_id})>"
