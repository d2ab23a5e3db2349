"""Environment-driven settings for the generation service.

Every knob is read at call time so tests can monkeypatch the environment and
call :func:`load_settings` again.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


DEFAULT_DAILY_TOKEN_LIMIT = 1_000_000
DEFAULT_MONTHLY_TOKEN_LIMIT = 20_000_000
DEFAULT_ALERT_THRESHOLD = 80
CRITICAL_THRESHOLD = 95


@dataclass(frozen=True)
class Settings:
    daily_token_limit: int = DEFAULT_DAILY_TOKEN_LIMIT
    monthly_token_limit: int = DEFAULT_MONTHLY_TOKEN_LIMIT
    alert_threshold: int = DEFAULT_ALERT_THRESHOLD
    redis_url: Optional[str] = None
    ledger_store: str = "auto"
    heartbeat_seconds: float = 15.0
    stall_timeout_seconds: float = 120.0
    cache_ttl_seconds: int = 1800


def _env_int(name: str, default: int) -> int:
    if not name:
        return default
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def load_settings() -> Settings:
    threshold = _env_int("COST_ALERT_THRESHOLD", DEFAULT_ALERT_THRESHOLD)
    if threshold > 100:
        threshold = DEFAULT_ALERT_THRESHOLD
    return Settings(
        daily_token_limit=_env_int("DAILY_TOKEN_LIMIT", DEFAULT_DAILY_TOKEN_LIMIT),
        monthly_token_limit=_env_int("MONTHLY_TOKEN_LIMIT", DEFAULT_MONTHLY_TOKEN_LIMIT),
        alert_threshold=threshold,
        redis_url=(os.getenv("REDIS_URL") or "").strip() or None,
        ledger_store=(os.getenv("GENSTREAM_LEDGER_STORE") or "auto").strip().lower(),
        heartbeat_seconds=_env_float("GENSTREAM_STREAM_HEARTBEAT_SECONDS", 15.0),
        stall_timeout_seconds=_env_float("GENSTREAM_STALL_TIMEOUT_SECONDS", 120.0),
        cache_ttl_seconds=_env_int("GENSTREAM_CACHE_TTL_SECONDS", 1800),
    )
