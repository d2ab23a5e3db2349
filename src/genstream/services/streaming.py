"""NDJSON framing of orchestrator output.

One JSON object per line: ``progress`` frames while stages run, then exactly
one terminal ``complete`` or ``error`` frame, after which the stream ends.
``heartbeat`` frames fill silences longer than the heartbeat interval.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Any, AsyncIterator, Dict, Union

from prometheus_client import Gauge

from ..domain.models import GenerationError, GenerationRequest, GenerationResult, ProgressEvent


logger = logging.getLogger("genstream.stream")

FRAME_DELIMITER = b"\n"
NDJSON_MEDIA_TYPE = "application/x-ndjson"

_ACTIVE_STREAMS = Gauge(
    "genstream_active_streams",
    "Generation streams currently open",
)


def encode_frame(frame: Dict[str, Any]) -> bytes:
    # json.dumps escapes embedded newlines, so one frame is always one line.
    return json.dumps(frame, separators=(",", ":")).encode("utf-8") + FRAME_DELIMITER


def progress_frame(event: ProgressEvent) -> Dict[str, Any]:
    frame: Dict[str, Any] = {"type": "progress", "stage": event.stage.value, "kind": event.kind.value}
    if event.message is not None:
        frame["message"] = event.message
    return frame


def error_payload(error: GenerationError) -> Dict[str, Any]:
    """Wire form of an error, shared by error frames and plain JSON responses."""

    payload: Dict[str, Any] = {
        "success": False,
        "error": error.code,
        "message": error.message,
        "retryable": error.retryable,
    }
    if error.rate_limited:
        payload["rateLimited"] = True
    if error.reset_at:
        payload["resetAt"] = error.reset_at
    if error.details:
        payload["details"] = error.details
    return payload


def error_from_payload(payload: Dict[str, Any]) -> GenerationError:
    return GenerationError(
        code=str(payload.get("error") or "generation_failed"),
        message=str(payload.get("message") or "Failed to generate project"),
        retryable=bool(payload.get("retryable", False)),
        rate_limited=bool(payload.get("rateLimited", False)),
        reset_at=payload.get("resetAt"),
        details=payload.get("details"),
    )


def error_frame(error: GenerationError) -> Dict[str, Any]:
    return {"type": "error", **error_payload(error)}


def outcome_frame(outcome: Union[GenerationResult, GenerationError]) -> Dict[str, Any]:
    if isinstance(outcome, GenerationError):
        return error_frame(outcome)
    return {"type": "complete", "result": outcome.model_dump(mode="json")}


HEARTBEAT = encode_frame({"type": "heartbeat"})


async def stream_generation(
    orchestrator: Any,
    request: GenerationRequest,
    heartbeat_interval: float = 15.0,
) -> AsyncIterator[bytes]:
    """Yield encoded frames for one generation run.

    The orchestrator runs in a worker thread. If the consumer goes away the
    worker still runs to completion; only frame delivery stops.
    """

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def _put(item: Any) -> None:
        try:
            loop.call_soon_threadsafe(queue.put_nowait, item)
        except RuntimeError:
            # Event loop closed: the client is gone, keep generating.
            logger.debug("stream_consumer_gone", extra={"request_id": request.request_id})

    def _worker() -> None:
        try:
            outcome = orchestrator.generate(request, emit=_put)
        except Exception as exc:
            logger.exception("stream_worker_failed", extra={"request_id": request.request_id})
            outcome = GenerationError(
                code="generation_failed",
                message="Failed to generate project",
                retryable=False,
                details=str(exc)[:400],
            )
        _put(outcome)

    threading.Thread(target=_worker, name=f"generate-{request.request_id[:8]}", daemon=True).start()
    _ACTIVE_STREAMS.inc()
    try:
        while True:
            try:
                item = await asyncio.wait_for(queue.get(), timeout=heartbeat_interval)
            except asyncio.TimeoutError:
                yield HEARTBEAT
                continue
            if isinstance(item, ProgressEvent):
                yield encode_frame(progress_frame(item))
                continue
            yield encode_frame(outcome_frame(item))
            return
    finally:
        _ACTIVE_STREAMS.dec()
