"""Atomic counters with window-aligned expiry.

The ledger only ever talks to a :class:`CounterStore`; increments are a single
store-side operation so concurrent callers never read-modify-write a shared
counter themselves.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from threading import RLock
from typing import Callable, Dict, Optional, Protocol

import redis

from ..config import load_settings


logger = logging.getLogger("genstream.ledger")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(UTC)


class CounterStoreUnavailable(Exception):
    """The backing store could not serve the operation."""


class CounterStore(Protocol):
    @property
    def mode(self) -> str: ...
    def get(self, key: str) -> int: ...
    def incr(self, key: str, amount: int, expire_at: datetime) -> int: ...


@dataclass
class _CounterEntry:
    value: int
    expire_at: datetime


class InMemoryCounterStore:
    """Process-local counters. Not shared across workers."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._lock = RLock()
        self._entries: Dict[str, _CounterEntry] = {}
        self._clock = clock or utcnow

    @property
    def mode(self) -> str:
        return "local"

    def _live(self, key: str) -> Optional[_CounterEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expire_at:
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            return entry.value if entry else 0

    def incr(self, key: str, amount: int, expire_at: datetime) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                entry = _CounterEntry(value=0, expire_at=expire_at)
                self._entries[key] = entry
            entry.value += amount
            return entry.value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class RedisCounterStore:
    def __init__(self, url: str, socket_timeout: float = 0.5) -> None:
        self._url = url
        self._socket_timeout = socket_timeout
        self._client: Optional[redis.Redis] = None
        self._connect()

    @property
    def mode(self) -> str:
        return "distributed"

    @property
    def connected(self) -> bool:
        return self._client is not None

    @property
    def client(self) -> Optional[redis.Redis]:
        """The live connection, or None until the next operation reconnects."""
        return self._client

    def _connect(self) -> None:
        try:
            self._client = redis.Redis.from_url(self._url, socket_timeout=self._socket_timeout)
            self._client.ping()
        except Exception as exc:
            logger.warning("ledger_redis_connect_failed", extra={"err": str(exc)})
            self._client = None

    def _require_client(self) -> redis.Redis:
        if not self._client:
            self._connect()
        if not self._client:
            raise CounterStoreUnavailable(f"redis unreachable at {self._url}")
        return self._client

    def get(self, key: str) -> int:
        client = self._require_client()
        try:
            raw = client.get(key)
        except redis.RedisError as exc:
            self._client = None
            raise CounterStoreUnavailable(str(exc)) from exc
        return int(raw) if raw is not None else 0

    def incr(self, key: str, amount: int, expire_at: datetime) -> int:
        client = self._require_client()
        try:
            # INCRBY and EXPIREAT run as one MULTI/EXEC; the expiry is the window
            # boundary so re-applying it never moves it.
            pipe = client.pipeline(transaction=True)
            pipe.incrby(key, amount)
            pipe.expireat(key, int(expire_at.timestamp()))
            value, _ = pipe.execute()
        except redis.RedisError as exc:
            self._client = None
            raise CounterStoreUnavailable(str(exc)) from exc
        return int(value)


class FailoverCounterStore:
    """Serve from ``primary`` and fall back to ``fallback`` while it is down.

    ``mode`` reports which guarantee the most recent operation had.
    """

    def __init__(self, primary: Optional[CounterStore], fallback: InMemoryCounterStore) -> None:
        self._primary = primary
        self._fallback = fallback
        self._degraded = primary is None

    @property
    def mode(self) -> str:
        if self._primary is None or self._degraded:
            return self._fallback.mode
        return self._primary.mode

    @property
    def primary(self) -> Optional[CounterStore]:
        return self._primary

    @property
    def fallback(self) -> InMemoryCounterStore:
        return self._fallback

    def _mark(self, degraded: bool, exc: Optional[Exception] = None) -> None:
        if degraded and not self._degraded:
            logger.warning("ledger_store_fallback_local", extra={"err": str(exc) if exc else None})
        elif not degraded and self._degraded:
            logger.info("ledger_store_restored_distributed")
        self._degraded = degraded

    def get(self, key: str) -> int:
        if self._primary is not None:
            try:
                value = self._primary.get(key)
                self._mark(False)
                return value
            except CounterStoreUnavailable as exc:
                self._mark(True, exc)
        return self._fallback.get(key)

    def incr(self, key: str, amount: int, expire_at: datetime) -> int:
        if self._primary is not None:
            try:
                value = self._primary.incr(key, amount, expire_at)
                self._mark(False)
                return value
            except CounterStoreUnavailable as exc:
                self._mark(True, exc)
        return self._fallback.incr(key, amount, expire_at)


_store: Optional[FailoverCounterStore] = None


def get_counter_store() -> FailoverCounterStore:
    """Return the process-wide store, built from settings on first use."""

    global _store
    if _store is not None:
        return _store
    settings = load_settings()
    primary: Optional[CounterStore] = None
    if settings.ledger_store != "memory" and settings.redis_url:
        primary = RedisCounterStore(settings.redis_url)
    _store = FailoverCounterStore(primary, InMemoryCounterStore())
    return _store


def reset_counter_store() -> None:
    """Drop the process-wide store (useful for tests)."""

    global _store
    _store = None
