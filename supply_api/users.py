"""
Identity resolution: map a verified OIDC subject to a local account decision.

resolve() is the read-only fast path for approved users. provision_from_profile()
is the write path for first-time (or still pending) users: it registers an
inactive account that an administrator has to activate.
"""
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from supply_api.models import User

logger = logging.getLogger(__name__)


class UserDirectory(Protocol):
    def get_active_by_sub(self, oidc_sub: str) -> User | None: ...

    def get_by_sub(self, oidc_sub: str) -> User | None: ...

    def username_taken(self, username: str) -> bool: ...

    def email_taken(self, email: str) -> bool: ...

    def create_from_oidc(self, oidc_sub: str, username: str, email: str | None) -> User: ...

    def activate(self, user_id: int) -> User | None: ...

    def deactivate(self, user_id: int) -> User | None: ...


class SqlUserDirectory:
    """UserDirectory backed by the users table."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def get_active_by_sub(self, oidc_sub: str) -> User | None:
        return self.db.scalar(select(User).where(User.oidc_sub == oidc_sub, User.is_active.is_(True)))

    def get_by_sub(self, oidc_sub: str) -> User | None:
        return self.db.scalar(select(User).where(User.oidc_sub == oidc_sub))

    def username_taken(self, username: str) -> bool:
        return self.db.scalar(select(User.id).where(User.username == username)) is not None

    def email_taken(self, email: str) -> bool:
        return self.db.scalar(select(User.id).where(User.email == email)) is not None

    def create_from_oidc(self, oidc_sub: str, username: str, email: str | None) -> User:
        """Insert a new inactive user with zero trust points."""
        user = User(oidc_sub=oidc_sub, username=username, email=email, is_active=False, trust_points=0)
        self.db.add(user)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise
        self.db.refresh(user)
        return user

    def _set_active(self, user_id: int, active: bool) -> User | None:
        user = self.db.get(User, user_id)
        if user is None:
            return None
        user.is_active = active
        self.db.commit()
        self.db.refresh(user)
        return user

    def activate(self, user_id: int) -> User | None:
        return self._set_active(user_id, True)

    def deactivate(self, user_id: int) -> User | None:
        return self._set_active(user_id, False)


@dataclass(frozen=True)
class ExternalIdentity:
    subject: str
    email: str | None = None
    display_name: str | None = None

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "ExternalIdentity":
        display_name = None
        for key in ("nickname", "name", "preferred_username"):
            value = claims.get(key)
            if isinstance(value, str) and value.strip():
                display_name = value.strip()
                break
        email = claims.get("email")
        return cls(
            subject=claims["sub"],
            email=email.strip() if isinstance(email, str) and email.strip() else None,
            display_name=display_name,
        )


# Login decisions. Expected business outcomes, not errors.
@dataclass(frozen=True)
class Allowed:
    account: User


@dataclass(frozen=True)
class PendingApproval:
    account: User


@dataclass(frozen=True)
class NotAllowed:
    subject: str


LoginDecision = Allowed | PendingApproval | NotAllowed


class IdentityResolver:
    def __init__(self, directory: UserDirectory) -> None:
        self.directory = directory

    def resolve(self, subject: str) -> LoginDecision:
        account = self.directory.get_active_by_sub(subject)
        if account is not None:
            return Allowed(account)
        existing = self.directory.get_by_sub(subject)
        if existing is not None:
            return PendingApproval(existing)
        return NotAllowed(subject)

    def provision_from_profile(
        self, subject: str, display_name: str | None, email: str | None
    ) -> tuple[User, bool]:
        """
        Return (account, created). Existing accounts (active or not) are returned
        unchanged; otherwise a new inactive account is created.
        """
        existing = self.directory.get_by_sub(subject)
        if existing is not None:
            return existing, False

        username = self._available_username(subject, display_name)
        if email and self.directory.email_taken(email):
            email = None

        try:
            account = self.directory.create_from_oidc(subject, username, email)
        except IntegrityError:
            # Lost a race with a concurrent callback for the same subject
            existing = self.directory.get_by_sub(subject)
            if existing is None:
                raise
            return existing, False
        logger.info("Registered new inactive account id=%s for sub=%s", account.id, subject)
        return account, True

    def _available_username(self, subject: str, display_name: str | None) -> str:
        """Display name if free, else the subject, else the subject with a numeric suffix."""
        candidates = [display_name, subject] if display_name else [subject]
        for name in candidates:
            if not self.directory.username_taken(name):
                if name != candidates[0]:
                    logger.info("Username %r already in use; registering sub %s as %r", candidates[0], subject, name)
                return name
        n = 2
        while self.directory.username_taken(f"{subject}-{n}"):
            n += 1
        logger.info("Usernames for sub %s already in use; registering as %s-%d", subject, subject, n)
        return f"{subject}-{n}"
