"""Per-session fixed-window limits on generation requests."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Dict, Optional, Tuple

from ..config import _env_int


DEFAULT_LIMIT = 3
DEFAULT_WINDOW_SECONDS = 24 * 60 * 60


@dataclass
class _RateLimitEntry:
    count: int
    window_end: datetime


@dataclass(frozen=True)
class RateLimitStatus:
    remaining: int
    reset_at: Optional[datetime]


_LIMIT_STORE: Dict[Tuple[str, str], _RateLimitEntry] = {}
_LOCK = Lock()


class RateLimitExceeded(Exception):
    def __init__(self, retry_after_seconds: int, reset_at: datetime) -> None:
        super().__init__("Rate limit exceeded")
        self.retry_after_seconds = retry_after_seconds
        self.reset_at = reset_at


def rate_limit_action(
    key: str,
    identifier: str,
    *,
    limit_env: str = "GENSTREAM_RATE_LIMIT",
    window_env: str = "GENSTREAM_RATE_LIMIT_WINDOW_SECONDS",
    default_limit: int = DEFAULT_LIMIT,
    default_window_seconds: int = DEFAULT_WINDOW_SECONDS,
    now: Optional[datetime] = None,
) -> RateLimitStatus:
    """Count one action for ``identifier`` under ``key``.

    Raises:
        RateLimitExceeded if the action should be blocked. ``reset_at`` tells
        the caller when the window reopens.
    """

    if _rate_limiting_disabled():
        return RateLimitStatus(remaining=-1, reset_at=None)

    limit = _env_int(limit_env, default_limit)
    window_seconds = _env_int(window_env, default_window_seconds)

    now = now or datetime.now(timezone.utc)
    store_key = (key, identifier)
    with _LOCK:
        entry = _LIMIT_STORE.get(store_key)
        if entry and entry.window_end > now:
            if entry.count >= limit:
                retry_after = int((entry.window_end - now).total_seconds())
                raise RateLimitExceeded(max(retry_after, 1), entry.window_end)
            entry.count += 1
            return RateLimitStatus(remaining=limit - entry.count, reset_at=entry.window_end)

        window_end = now + timedelta(seconds=window_seconds)
        _LIMIT_STORE[store_key] = _RateLimitEntry(count=1, window_end=window_end)
        return RateLimitStatus(remaining=limit - 1, reset_at=window_end)


def _rate_limiting_disabled() -> bool:
    flag = os.getenv("GENSTREAM_RATE_LIMIT_DISABLED")
    if flag and flag.lower() in {"1", "true", "yes", "on"}:
        return True
    return False


def reset_rate_limits() -> None:
    """Clear in-memory counters (useful for tests)."""

    with _LOCK:
        _LIMIT_STORE.clear()
