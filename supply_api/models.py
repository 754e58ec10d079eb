"""
SQLAlchemy models: local user accounts linked to an OIDC subject, and the auth audit log.
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    # sub claim from the provider's ID token; stable external id
    oidc_sub: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    username: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    # Must be true to log in; set by an administrator
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    trust_points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)

    def public_profile(self) -> dict:
        """Fields returned to the client after login."""
        return {
            "id": self.id,
            "email": self.email or "",
            "username": self.username,
            "oidc_sub": self.oidc_sub,
            "is_active": self.is_active,
            "trust_points": self.trust_points,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class AuthAuditLog(Base):
    """Security-relevant auth events. No tokens, secrets or codes stored."""
    __tablename__ = "auth_audit_log"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[int | None] = mapped_column(nullable=True)  # None = unknown / anonymous
    oidc_sub: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    outcome: Mapped[str] = mapped_column(String(16), nullable=False)  # success | pending | fail
