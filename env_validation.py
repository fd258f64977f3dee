"""Environment variable validation and management."""

import os
import logging
from dataclasses import dataclass
from typing import Dict

logger = logging.getLogger(__name__)

_DEFAULT_SECRET = "dev-secret-change-me"


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


@dataclass(frozen=True)
class Settings:
    db_path: str
    auth_secret: str
    auth_algorithm: str
    auth_token_ttl: int
    auth_leeway: int
    cache_max_entries: int
    cache_ttl_seconds: float
    broadcast_queue_size: int
    alert_window_seconds: float
    alert_auth_failure_threshold: int
    alert_rate_anomaly_threshold: int
    alert_privilege_threshold: int
    rate_limit_per_minute: int
    passing_score: float
    retention_interval_seconds: int
    retention_enabled: bool

    @property
    def alert_thresholds(self) -> Dict[str, int]:
        return {
            "auth_failure": self.alert_auth_failure_threshold,
            "rate_anomaly": self.alert_rate_anomaly_threshold,
            "privilege_violation": self.alert_privilege_threshold,
        }


def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": os.getenv("DB_PATH") or "data.db",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "AUTH_SECRET": "HMAC secret used to verify bearer credentials",
        "RETENTION_INTERVAL_SECONDS": "Seconds between retention sweeps",
    }

    positive_ints = (
        "AUTH_TOKEN_TTL",
        "CACHE_MAX_ENTRIES",
        "BROADCAST_QUEUE_SIZE",
        "ALERT_AUTH_FAILURE_THRESHOLD",
        "ALERT_RATE_ANOMALY_THRESHOLD",
        "ALERT_PRIVILEGE_THRESHOLD",
        "RATE_LIMIT_PER_MINUTE",
        "RETENTION_INTERVAL_SECONDS",
    )
    for var in positive_ints:
        value = os.getenv(var)
        if value is None:
            continue
        try:
            number = int(value)
        except ValueError:
            raise EnvironmentError(f"{var} must be an integer: {value}") from None
        if number <= 0:
            raise EnvironmentError(f"{var} must be positive: {value}")

    window = os.getenv("ALERT_WINDOW_SECONDS")
    if window is not None:
        try:
            if float(window) <= 0:
                raise EnvironmentError(f"ALERT_WINDOW_SECONDS must be positive: {window}")
        except ValueError:
            raise EnvironmentError(f"ALERT_WINDOW_SECONDS must be numeric: {window}") from None

    passing = os.getenv("PASSING_SCORE")
    if passing is not None:
        try:
            passing_value = float(passing)
        except ValueError:
            raise EnvironmentError(f"PASSING_SCORE must be numeric: {passing}") from None
        if not 0.0 <= passing_value <= 1.0:
            raise EnvironmentError(f"PASSING_SCORE must be within [0, 1]: {passing}")

    algorithm = os.getenv("AUTH_ALGORITHM", "HS256")
    if not algorithm.upper().startswith("HS"):
        raise EnvironmentError(f"Only HMAC algorithms are supported for AUTH_ALGORITHM: {algorithm}")

    # Log optional variables status
    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")


def load_settings() -> Settings:
    """Build a Settings snapshot from the current environment."""
    return Settings(
        db_path=os.getenv("DB_PATH", "data.db"),
        auth_secret=os.getenv("AUTH_SECRET") or _DEFAULT_SECRET,
        auth_algorithm=os.getenv("AUTH_ALGORITHM", "HS256").upper(),
        auth_token_ttl=get_env_int("AUTH_TOKEN_TTL", 3600),
        auth_leeway=get_env_int("AUTH_LEEWAY", 0),
        cache_max_entries=get_env_int("CACHE_MAX_ENTRIES", 2048),
        cache_ttl_seconds=get_env_float("CACHE_TTL_SECONDS", 300.0),
        broadcast_queue_size=get_env_int("BROADCAST_QUEUE_SIZE", 100),
        alert_window_seconds=get_env_float("ALERT_WINDOW_SECONDS", 300.0),
        alert_auth_failure_threshold=get_env_int("ALERT_AUTH_FAILURE_THRESHOLD", 5),
        alert_rate_anomaly_threshold=get_env_int("ALERT_RATE_ANOMALY_THRESHOLD", 3),
        alert_privilege_threshold=get_env_int("ALERT_PRIVILEGE_THRESHOLD", 1),
        rate_limit_per_minute=get_env_int("RATE_LIMIT_PER_MINUTE", 120),
        passing_score=get_env_float("PASSING_SCORE", 0.8),
        retention_interval_seconds=get_env_int("RETENTION_INTERVAL_SECONDS", 86400),
        retention_enabled=get_env_bool("RETENTION_ENABLED", True),
    )


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r; using %s", name, value, default)
        return default


def get_env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r; using %s", name, value, default)
        return default
