import os
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_DATABASE_URL = "postgresql://localhost/fieldclock"


def env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return v.strip()


def env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return v.strip().lower() not in {"0", "false", "no", "off"}


def database_url() -> str:
    return env_str("DATABASE_URL", DEFAULT_DATABASE_URL)


def app_env() -> str:
    return env_str("ENV", "dev").lower()


def is_dev_env() -> bool:
    return app_env() in {"dev", "local", "test"}


def log_level() -> str:
    return env_str("LOG_LEVEL", "INFO").upper()


def trigger_timezone() -> ZoneInfo:
    """Zone used to evaluate trigger day-of-week and time windows. Falls back to UTC."""
    name = env_str("TRIGGER_TIMEZONE", "UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")
