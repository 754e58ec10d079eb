"""
Seed an approved account from the environment so a fresh deployment has someone
who can log in. Optional: SEED_ACTIVE_OIDC_SUB (+ SEED_ACTIVE_USERNAME, SEED_ACTIVE_EMAIL).
"""
import logging

from sqlalchemy.orm import Session

from supply_api.config import Settings
from supply_api.users import IdentityResolver, SqlUserDirectory

logger = logging.getLogger(__name__)


def seed_from_env(db: Session, settings: Settings) -> None:
    """Ensure the configured subject has an active account (create or activate)."""
    sub = settings.seed_active_oidc_sub
    if not sub:
        return
    directory = SqlUserDirectory(db)
    account, created = IdentityResolver(directory).provision_from_profile(
        sub, settings.seed_active_username or None, settings.seed_active_email or None
    )
    if account.is_active:
        logger.debug("Seed account already active: id=%s", account.id)
        return
    directory.activate(account.id)
    logger.info("Seeded active account id=%s for sub=%s (new=%s)", account.id, sub, created)
