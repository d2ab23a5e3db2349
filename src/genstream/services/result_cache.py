from __future__ import annotations

import hashlib
import json
import time
from dataclasses import dataclass
from threading import RLock
from typing import Callable, Dict, Optional

from ..domain.models import GenerationRequest, GenerationResult


_MAX_ENTRIES_BEFORE_PRUNE = 100


@dataclass
class _CacheEntry:
    result: GenerationResult
    expires_at: float


def cache_key(request: GenerationRequest) -> str:
    key_data = json.dumps(
        {
            "description": request.description,
            "project_name": request.project_name or "",
            "template": request.template or "",
            "vision": request.vision or "",
            "mission": request.mission or "",
            "seed": request.seed,
        },
        sort_keys=True,
    )
    return hashlib.sha256(key_data.encode("utf-8")).hexdigest()[:16]


class ResultCache:
    """In-process cache of finished results, keyed on the request inputs."""

    def __init__(self, ttl_seconds: float = 1800, clock: Optional[Callable[[], float]] = None) -> None:
        self._ttl = ttl_seconds
        self._clock = clock or time.time
        self._lock = RLock()
        self._entries: Dict[str, _CacheEntry] = {}

    def get(self, request: GenerationRequest) -> Optional[GenerationResult]:
        key = cache_key(request)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            return entry.result.model_copy(update={"cached": True})

    def put(self, request: GenerationRequest, result: GenerationResult) -> None:
        with self._lock:
            self._entries[cache_key(request)] = _CacheEntry(result=result, expires_at=self._clock() + self._ttl)
            if len(self._entries) > _MAX_ENTRIES_BEFORE_PRUNE:
                now = self._clock()
                for key in [k for k, e in self._entries.items() if e.expires_at <= now]:
                    del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
