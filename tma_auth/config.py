from dataclasses import dataclass, field
from pathlib import Path

from .security import DEFAULT_FRESHNESS_WINDOW
from .sessions import TOKEN_MAX_TTL, TOKEN_TTL


@dataclass
class Config:
    telegram_token: str
    admin_users: set[int] = field(default_factory=set)
    webapp_url: str = ""
    api_port: int = 0
    api_host: str = "0.0.0.0"
    cors_origin: str = "*"
    sessions_file: Path | None = None
    freshness_window: int = DEFAULT_FRESHNESS_WINDOW
    session_ttl: int = TOKEN_TTL
    session_max_ttl: int = TOKEN_MAX_TTL
    replay_cache_size: int = 10000
    log_level: str = "INFO"


def _parse_admin_users(raw: str) -> set[int]:
    """Parse comma-separated user IDs into a set."""
    return set(int(x) for x in raw.split(",") if x.strip())


def _section(config, name: str) -> dict:
    return config[name] if config.has_section(name) else {}


def _get_int(section, key: str, default: int) -> int:
    raw = section.get(key, "").strip()
    return int(raw) if raw else default


def load_config(config) -> Config:
    """Build a Config from a parsed configparser object."""
    telegram = config["TELEGRAM"]
    telegram_token = telegram["bot_token"].strip()
    if not telegram_token:
        raise ValueError("TELEGRAM.bot_token must not be empty")

    admins = telegram.get("admin_users", "").strip()
    admin_users = _parse_admin_users(admins) if admins else set()

    api = _section(config, "API")
    auth = _section(config, "AUTH")
    sessions_file = api.get("sessions_file", "").strip()

    freshness_window = _get_int(auth, "freshness_window", DEFAULT_FRESHNESS_WINDOW)
    if freshness_window <= 0:
        raise ValueError("AUTH.freshness_window must be positive")
    session_ttl = _get_int(auth, "session_ttl", TOKEN_TTL)
    session_max_ttl = _get_int(auth, "session_max_ttl", TOKEN_MAX_TTL)
    if session_max_ttl < session_ttl:
        raise ValueError("AUTH.session_max_ttl must not be shorter than AUTH.session_ttl")

    return Config(
        telegram_token=telegram_token,
        admin_users=admin_users,
        webapp_url=telegram.get("webapp_url", "").strip(),
        api_port=_get_int(api, "port", 0),
        api_host=api.get("host", "").strip() or "0.0.0.0",
        cors_origin=api.get("cors_origin", "").strip() or "*",
        sessions_file=Path(sessions_file) if sessions_file else None,
        freshness_window=freshness_window,
        session_ttl=session_ttl,
        session_max_ttl=session_max_ttl,
        replay_cache_size=_get_int(auth, "replay_cache_size", 10000),
        log_level=_section(config, "LOGGING").get("level", "").strip() or "INFO",
    )


def is_admin(config: Config, user_id: int) -> bool:
    """Check if a verified user may use the admin endpoints."""
    if not config.admin_users:
        return False
    return user_id in config.admin_users
