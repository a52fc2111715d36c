"""
config.py
=========
Runtime settings, read once from the environment.

Variables:
  DATABASE_URL     - SQLAlchemy URL (default: local SQLite file)
  REDIS_URL        - distributed cache (L2) location
  CACHE_L1_TTL     - process-local cache TTL in seconds
  CACHE_L2_TTL     - distributed cache TTL in seconds (must be >= CACHE_L1_TTL)
  IDEMPOTENCY_TTL  - lifetime of a double-submission lock in seconds
  GUEST_CART_DAYS  - days before an untouched guest cart expires
  STAFF_API_KEY    - shared secret for admin routes
  LOG_LEVEL        - root log level
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./marketplace.db"
    redis_url: str = "redis://localhost:6379/0"
    cache_l1_ttl: int = 60
    cache_l2_ttl: int = 300
    idempotency_ttl: int = 5
    guest_cart_days: int = 7
    staff_api_key: Optional[str] = None
    log_level: str = "INFO"

    def __post_init__(self):
        if self.cache_l1_ttl > self.cache_l2_ttl:
            raise ValueError("CACHE_L1_TTL must not exceed CACHE_L2_TTL")
        if self.idempotency_ttl <= 0:
            raise ValueError("IDEMPOTENCY_TTL must be positive")


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def get_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", Settings.database_url),
        redis_url=os.getenv("REDIS_URL", Settings.redis_url),
        cache_l1_ttl=_int_env("CACHE_L1_TTL", Settings.cache_l1_ttl),
        cache_l2_ttl=_int_env("CACHE_L2_TTL", Settings.cache_l2_ttl),
        idempotency_ttl=_int_env("IDEMPOTENCY_TTL", Settings.idempotency_ttl),
        guest_cart_days=_int_env("GUEST_CART_DAYS", Settings.guest_cart_days),
        staff_api_key=os.getenv("STAFF_API_KEY") or None,
        log_level=os.getenv("LOG_LEVEL", Settings.log_level).upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
