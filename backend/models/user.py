from enum import Enum

from db.database import Base
from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func


class UserRole(str, Enum):
    USER = "user"
    ADMINISTRATOR = "administrator"


class AuthProvider(str, Enum):
    LOCAL = "local"
    SAML = "saml"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    # Always stored lower-cased so lookups and lockout keys agree
    email = Column(String(255), nullable=False, unique=True, index=True)
    # SECURITY: tagged hash ("bcrypt$..."), never the plaintext.
    # NULL for SSO-only accounts, which can never log in with a password.
    password_hash = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False, default=UserRole.USER.value)
    auth_provider = Column(String(20), nullable=False, default=AuthProvider.LOCAL.value)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    last_login = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    refresh_tokens = relationship(
        "RefreshToken", back_populates="user", cascade="all, delete-orphan"
    )
    auth_audit_logs = relationship(
        "AuthAuditLog", back_populates="user"
    )

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', role='{self.role}')>"

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMINISTRATOR.value

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)
