"""
Configuration handling for the PetCarte services.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_MAX_CAPACITY = 15
DEFAULT_QR_VALIDITY_DAYS = 365
DEFAULT_OWNER_TOKEN_HOURS = 24 * 30
DEFAULT_BUSY_TIMEOUT_MS = 5000


@dataclass
class Settings:
    """Simple container for application level settings."""

    app_name: str
    database_path: str
    secret_key: str
    log_level: str = "INFO"
    default_max_capacity: int = DEFAULT_MAX_CAPACITY
    qr_validity_days: int = DEFAULT_QR_VALIDITY_DAYS
    owner_token_hours: int = DEFAULT_OWNER_TOKEN_HOURS
    require_contract: bool = False
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {value!r}") from exc


def load_settings() -> Settings:
    """
    Build :class:`Settings` from environment variables.

    ``SECRET_KEY`` (or ``JWT_SECRET_KEY``) is mandatory because it signs both
    identity tokens and the store QR codes.
    """
    secret = os.getenv("SECRET_KEY", os.getenv("JWT_SECRET_KEY"))
    if not secret:
        raise RuntimeError("JWT_SECRET_KEY or SECRET_KEY must be configured")

    default_capacity = _env_int("PETCARTE_DEFAULT_MAX_CAPACITY", DEFAULT_MAX_CAPACITY)
    if default_capacity < 1:
        raise RuntimeError("PETCARTE_DEFAULT_MAX_CAPACITY must be at least 1")

    return Settings(
        app_name=os.getenv("APP_NAME", "petcarte"),
        database_path=os.getenv("PETCARTE_DATABASE_PATH", "petcarte.db"),
        secret_key=secret,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        default_max_capacity=default_capacity,
        qr_validity_days=_env_int("PETCARTE_QR_VALIDITY_DAYS", DEFAULT_QR_VALIDITY_DAYS),
        owner_token_hours=_env_int("PETCARTE_OWNER_TOKEN_HOURS", DEFAULT_OWNER_TOKEN_HOURS),
        require_contract=_env_bool("PETCARTE_REQUIRE_CONTRACT"),
        busy_timeout_ms=_env_int("PETCARTE_BUSY_TIMEOUT_MS", DEFAULT_BUSY_TIMEOUT_MS),
    )
