"""
Service configuration. Read once from the environment by Settings.from_env() and
passed explicitly to create_app(); components never read os.environ themselves.
"""
import logging
import os
import re
import secrets
from dataclasses import dataclass, field
from datetime import timedelta

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = ("openid", "profile", "email")
DEFAULT_JWT_DURATION = timedelta(hours=168)

# Go-style durations ("168h", "1h30m", "90s", "500ms")
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


class ConfigError(Exception):
    """Raised when a required setting is missing or malformed."""


def parse_duration(value: str) -> timedelta:
    """Parse a Go-style duration string. Raises ConfigError if it does not parse."""
    raw = (value or "").strip()
    if not raw:
        raise ConfigError("empty duration")
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(raw):
        if match.start() != pos:
            raise ConfigError(f"invalid duration: {value!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(raw) or total <= 0:
        raise ConfigError(f"invalid duration: {value!r}")
    return timedelta(seconds=total)


def _split_list(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())


def _env(environ, key: str, default: str = "") -> str:
    return (environ.get(key) or default).strip()


def _env_int(environ, key: str, default: int) -> int:
    raw = _env(environ, key)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}")


def _env_bool(environ, key: str, default: bool) -> bool:
    raw = _env(environ, key)
    if not raw:
        return default
    return raw.lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class OIDCSettings:
    issuer: str = ""
    client_id: str = ""
    client_secret: str = field(default="", repr=False)
    redirect_url: str = ""
    scopes: tuple[str, ...] = DEFAULT_SCOPES
    end_session_url: str = ""
    post_logout_redirect_url: str = ""
    clock_skew_seconds: int = 30
    discovery_timeout: float = 10.0

    def missing_fields(self) -> list[str]:
        """Env var names of required OIDC settings that are empty."""
        required = [
            ("OIDC_ISSUER", self.issuer),
            ("OIDC_CLIENT_ID", self.client_id),
            ("OIDC_CLIENT_SECRET", self.client_secret),
            ("OIDC_REDIRECT_URL", self.redirect_url),
        ]
        return [name for name, value in required if not value]


@dataclass(frozen=True)
class JWTSettings:
    secret: str = field(default="", repr=False)
    duration: timedelta = DEFAULT_JWT_DURATION
    algorithm: str = "HS256"


@dataclass(frozen=True)
class Settings:
    oidc: OIDCSettings = field(default_factory=OIDCSettings)
    jwt: JWTSettings = field(default_factory=JWTSettings)
    database_url: str = "sqlite:///./supply_api.db"
    # Pending login attempts (state + PKCE verifier) expire after this many seconds
    flow_ttl_seconds: int = 600
    cookie_secure: bool = False
    cors_allow_origins: tuple[str, ...] = ()
    rate_limit_login_per_minute: int = 20
    rate_limit_refresh_per_minute: int = 60
    seed_active_oidc_sub: str = ""
    seed_active_username: str = ""
    seed_active_email: str = ""
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ=None) -> "Settings":
        """Build settings from environment variables (os.environ by default)."""
        env = os.environ if environ is None else environ

        scopes = _split_list(_env(env, "OIDC_SCOPES")) or DEFAULT_SCOPES
        oidc = OIDCSettings(
            issuer=_env(env, "OIDC_ISSUER").rstrip("/"),
            client_id=_env(env, "OIDC_CLIENT_ID"),
            client_secret=_env(env, "OIDC_CLIENT_SECRET"),
            redirect_url=_env(env, "OIDC_REDIRECT_URL"),
            scopes=scopes,
            end_session_url=_env(env, "OIDC_END_SESSION_URL"),
            post_logout_redirect_url=_env(env, "OIDC_POST_LOGOUT_REDIRECT_URL"),
            clock_skew_seconds=_env_int(env, "OIDC_CLOCK_SKEW_SECONDS", 30),
        )

        duration_raw = _env(env, "JWT_DURATION", "168h")
        try:
            duration = parse_duration(duration_raw)
        except ConfigError:
            logger.warning("JWT_DURATION %r is not a valid duration; using 168h", duration_raw)
            duration = DEFAULT_JWT_DURATION

        secret = _env(env, "JWT_SECRET")
        if not secret:
            # Tokens minted with a generated secret do not survive a restart
            logger.warning("JWT_SECRET not set; generated a process-local signing secret")
            secret = secrets.token_urlsafe(48)

        return cls(
            oidc=oidc,
            jwt=JWTSettings(
                secret=secret,
                duration=duration,
                algorithm=_env(env, "JWT_ALGORITHM", "HS256"),
            ),
            database_url=_env(env, "DATABASE_URL", "sqlite:///./supply_api.db"),
            flow_ttl_seconds=_env_int(env, "AUTH_FLOW_TTL_SECONDS", 600),
            cookie_secure=_env_bool(env, "AUTH_COOKIE_SECURE", False),
            cors_allow_origins=_split_list(_env(env, "CORS_ALLOW_ORIGINS")),
            rate_limit_login_per_minute=_env_int(env, "RATE_LIMIT_LOGIN_PER_MINUTE", 20),
            rate_limit_refresh_per_minute=_env_int(env, "RATE_LIMIT_REFRESH_PER_MINUTE", 60),
            seed_active_oidc_sub=_env(env, "SEED_ACTIVE_OIDC_SUB"),
            seed_active_username=_env(env, "SEED_ACTIVE_USERNAME"),
            seed_active_email=_env(env, "SEED_ACTIVE_EMAIL"),
            log_level=_env(env, "LOG_LEVEL", "INFO").upper(),
        )
