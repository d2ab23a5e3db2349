from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.concurrency import run_in_threadpool

from ...config import load_settings
from ...domain.models import GenerationError, GenerationRequest
from ...security.rate_limit import RateLimitExceeded, rate_limit_action
from ...services.ledger import BudgetLedger, get_ledger
from ...services.orchestrator import GenerationOrchestrator
from ...services.result_cache import ResultCache
from ...services.streaming import NDJSON_MEDIA_TYPE, encode_frame, error_payload, outcome_frame, stream_generation


logger = logging.getLogger("genstream.api")

router = APIRouter(tags=["Generation"])

_ERROR_STATUS: Dict[str, int] = {
    "budget_exceeded": status.HTTP_503_SERVICE_UNAVAILABLE,
    "backend_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
    "rate_limited": status.HTTP_429_TOO_MANY_REQUESTS,
    "backend_transient": status.HTTP_502_BAD_GATEWAY,
}

_orchestrator: Optional[GenerationOrchestrator] = None


def get_orchestrator() -> GenerationOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        settings = load_settings()
        _orchestrator = GenerationOrchestrator(cache=ResultCache(ttl_seconds=settings.cache_ttl_seconds))
    return _orchestrator


def _error_response(error: GenerationError) -> JSONResponse:
    code = _ERROR_STATUS.get(error.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    return JSONResponse(status_code=code, content=error_payload(error))


_STREAM_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.post("/generate/project")
async def generate_project(
    payload: GenerationRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    # Replays of a finished generation do not spend a session generation.
    cached = orchestrator.cached_result(payload)
    if cached is not None:
        if payload.stream:
            return StreamingResponse(
                iter([encode_frame(outcome_frame(cached))]),
                media_type=NDJSON_MEDIA_TYPE,
                headers=dict(_STREAM_HEADERS),
            )
        return JSONResponse(content=cached.model_dump(mode="json"))

    try:
        rate = rate_limit_action("generate_project", payload.session_id)
    except RateLimitExceeded as exc:
        reset_at = exc.reset_at.isoformat().replace("+00:00", "Z")
        logger.info("rate_limited session=%s reset_at=%s", payload.session_id, reset_at)
        return _error_response(GenerationError(
            code="rate_limited",
            message="You've reached the generation limit for this session.",
            retryable=False,
            rate_limited=True,
            reset_at=reset_at,
        ))

    logger.info(
        "generation_requested request_id=%s tier=%s stream=%s",
        payload.request_id,
        payload.model_tier,
        payload.stream,
    )
    headers = {"X-Generation-Remaining": str(rate.remaining)} if rate.remaining >= 0 else {}

    if payload.stream:
        settings = load_settings()
        headers.update(_STREAM_HEADERS)
        return StreamingResponse(
            stream_generation(orchestrator, payload, heartbeat_interval=settings.heartbeat_seconds),
            media_type=NDJSON_MEDIA_TYPE,
            headers=headers,
        )

    outcome = await run_in_threadpool(orchestrator.generate, payload)
    if isinstance(outcome, GenerationError):
        return _error_response(outcome)
    return JSONResponse(content=outcome.model_dump(mode="json"), headers=headers)


@router.get("/usage")
def usage_report(ledger: BudgetLedger = Depends(get_ledger)) -> Dict[str, Any]:
    return ledger.usage_report()
