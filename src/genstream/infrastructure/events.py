"""Generation lifecycle notifications on redis pub/sub.

Events share the ledger's redis connection and are only sent while the counter
store is distributed. A process running on local counters has no subscribers
to reach, so nothing is published. Publishing never fails a generation.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any, Dict, Optional

import redis

from ..domain.models import GenerationError, GenerationRequest, GenerationResult, Stage
from .counter_store import RedisCounterStore, get_counter_store


logger = logging.getLogger("genstream.events")

CHANNEL_PREFIX = "genstream.events"


def _now() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def _client() -> Optional[redis.Redis]:
    store = get_counter_store()
    if store.mode != "distributed":
        return None
    primary = store.primary
    if not isinstance(primary, RedisCounterStore):
        return None
    return primary.client


def _publish(kind: str, payload: Dict[str, Any]) -> bool:
    client = _client()
    if client is None:
        return False
    channel = f"{CHANNEL_PREFIX}.{kind}"
    try:
        client.publish(channel, json.dumps({"type": kind, **payload}, default=str))
    except redis.RedisError as exc:
        logger.debug("event_publish_failed", extra={"channel": channel, "err": str(exc)})
        return False
    return True


def generation_started(request: GenerationRequest, estimated_tokens: int) -> bool:
    return _publish("generation_started", {
        "request_id": request.request_id,
        "session_id": request.session_id,
        "model_tier": request.model_tier,
        "estimated_tokens": estimated_tokens,
        "at": _now(),
    })


def generation_completed(request: GenerationRequest, result: GenerationResult) -> bool:
    return _publish("generation_completed", {
        "request_id": request.request_id,
        "session_id": request.session_id,
        "tokens": result.usage.get("total", 0),
        "estimated_cost": result.usage.get("estimated_cost"),
        "files": len(result.files),
        "at": result.generated_at,
    })


def generation_failed(request: GenerationRequest, error: GenerationError, stage: Optional[Stage] = None) -> bool:
    return _publish("generation_failed", {
        "request_id": request.request_id,
        "session_id": request.session_id,
        "code": error.code,
        "retryable": error.retryable,
        "stage": stage.value if stage else None,
        "at": _now(),
    })
