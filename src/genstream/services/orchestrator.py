"""Runs the fixed four-stage generation pipeline behind the budget ledger.

Each attempt is all-or-nothing: stages run sequentially, the first failure
ends the run with a terminal :class:`GenerationError`, and nothing is retried
here. Retrying is the client's decision and always restarts from stage one.
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from prometheus_client import Counter

from ..domain.models import (
    AlertLevel,
    EventKind,
    GenerationError,
    GenerationRequest,
    GenerationResult,
    ProgressEvent,
    Stage,
)
from ..infrastructure import events
from .backend import (
    BackendTerminalError,
    BackendTransientError,
    BackendUnavailableError,
    LangChainBackend,
    StageBackend,
)
from .ledger import BudgetLedger, get_ledger
from .result_cache import ResultCache
from .stages import PipelineStage, default_stages
from .token_usage import StageUsage, TokenTracker


logger = logging.getLogger("genstream.orchestrator")

Emit = Callable[[ProgressEvent], None]
Outcome = Union[GenerationResult, GenerationError]

# Static pre-flight estimates, not predictions.
STAGE_TOKEN_ESTIMATES: Dict[Stage, int] = {
    Stage.INTENT: 1_500,
    Stage.ARCHITECTURE: 3_500,
    Stage.CODE: 8_000,
    Stage.CONTEXT: 2_000,
}

STAGE_MESSAGES: Dict[Stage, tuple[str, str]] = {
    Stage.INTENT: ("Analyzing project intent...", "Intent analysis complete"),
    Stage.ARCHITECTURE: ("Designing architecture...", "Architecture design complete"),
    Stage.CODE: ("Generating code files...", "Code generation complete"),
    Stage.CONTEXT: ("Building editor context...", "Editor context complete"),
}

_GENERATIONS = Counter(
    "genstream_generations_total",
    "Generation attempts by outcome",
    labelnames=("outcome",),
)
_BUDGET_REJECTIONS = Counter(
    "genstream_budget_rejections_total",
    "Generations rejected by the pre-flight budget check",
)


def estimate_tokens(stages: Sequence[PipelineStage]) -> int:
    return sum(STAGE_TOKEN_ESTIMATES.get(s.stage, 0) for s in stages)


def _now() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


class GenerationOrchestrator:
    def __init__(
        self,
        ledger: Optional[BudgetLedger] = None,
        backend: Optional[StageBackend] = None,
        stages: Optional[Sequence[PipelineStage]] = None,
        cache: Optional[ResultCache] = None,
    ) -> None:
        self._ledger = ledger or get_ledger()
        self._backend = backend or LangChainBackend()
        self._stages: List[PipelineStage] = list(stages) if stages else default_stages()
        self._cache = cache

    @property
    def ledger(self) -> BudgetLedger:
        return self._ledger

    def cached_result(self, request: GenerationRequest) -> Optional[GenerationResult]:
        """Return a finished result for identical inputs, if one is still cached."""

        if self._cache is None:
            return None
        cached = self._cache.get(request)
        if cached is not None:
            logger.info("generation_cache_hit", extra={"request_id": request.request_id})
            _GENERATIONS.labels(outcome="cached").inc()
        return cached

    def generate(self, request: GenerationRequest, emit: Optional[Emit] = None) -> Outcome:
        """Run one attempt and return exactly one terminal outcome."""

        cached = self.cached_result(request)
        if cached is not None:
            return cached

        estimate = estimate_tokens(self._stages)
        check = self._ledger.check_limit(estimate)
        if not check.allowed:
            logger.warning("budget_blocked %s", check.reason, extra={"request_id": request.request_id})
            _BUDGET_REJECTIONS.inc()
            return self._fail(
                request,
                GenerationError(code="budget_exceeded", message=check.reason or "Budget exceeded", retryable=False),
            )
        if check.alert_level is not AlertLevel.NORMAL and check.usage is not None:
            logger.warning(
                "budget_alert %s: daily %s%%, monthly %s%%",
                check.alert_level.value.upper(),
                check.usage.daily.percent_used,
                check.usage.monthly.percent_used,
            )

        def _emit(stage: Stage, kind: EventKind, message: Optional[str] = None) -> None:
            if emit is not None:
                emit(ProgressEvent(stage=stage, kind=kind, message=message))

        events.generation_started(request, estimate)
        tracker = TokenTracker(request.request_id)
        context: Dict[str, Any] = {}

        for stage in self._stages:
            start_msg, done_msg = STAGE_MESSAGES.get(stage.stage, (None, None))
            _emit(stage.stage, EventKind.START, start_msg)
            on_chunk = None
            if request.stream and emit is not None:
                on_chunk = lambda token, s=stage.stage: _emit(s, EventKind.CHUNK, token)
            started = time.perf_counter()
            try:
                output, reply = stage.run(self._backend, request, context, on_chunk=on_chunk)
            except BackendTransientError as exc:
                return self._fail(request, GenerationError(
                    code="backend_transient",
                    message=f"{stage.stage.value} stage failed: {exc}",
                    retryable=True,
                ), stage.stage)
            except BackendUnavailableError as exc:
                return self._fail(request, GenerationError(
                    code="backend_unavailable", message=str(exc), retryable=False,
                ), stage.stage)
            except BackendTerminalError as exc:
                return self._fail(request, GenerationError(
                    code="backend_terminal",
                    message=f"{stage.stage.value} stage failed: {exc}",
                    retryable=False,
                ), stage.stage)
            except Exception as exc:
                logger.exception("stage_crashed stage=%s", stage.stage.value)
                return self._fail(request, GenerationError(
                    code="generation_failed",
                    message=f"{stage.stage.value} stage failed unexpectedly",
                    retryable=False,
                    details=str(exc)[:400],
                ), stage.stage)

            tracker.record(StageUsage(
                stage=stage.stage,
                input_tokens=reply.input_tokens,
                output_tokens=reply.output_tokens,
                model=reply.model,
                duration_ms=(time.perf_counter() - started) * 1000,
            ))
            context[stage.output_key] = output
            _emit(stage.stage, EventKind.COMPLETE, done_msg)

        actual = tracker.total_tokens
        try:
            self._ledger.record(actual)
        except Exception:
            # Spend already happened; the result is still delivered.
            logger.exception("ledger_record_failed tokens=%s", actual)

        result = self._assemble(request, context, tracker)
        if self._cache is not None:
            self._cache.put(request, result)
        logger.info(tracker.export_metrics())
        _GENERATIONS.labels(outcome="completed").inc()
        events.generation_completed(request, result)
        return result

    def _assemble(self, request: GenerationRequest, context: Dict[str, Any], tracker: TokenTracker) -> GenerationResult:
        code = context.get("code")
        project_context = context.get("context")
        return GenerationResult(
            intent=context["intent"],
            architecture=context["architecture"],
            files=list(code.files) if code else [],
            integration_code=list(code.integration_code) if code else [],
            cursorrules=project_context.cursorrules if project_context else "",
            start_prompt=project_context.start_prompt if project_context else "",
            generated_at=_now(),
            seed=request.seed if request.seed is not None else int(time.time() * 1000),
            usage=tracker.summary(),
        )

    def _fail(self, request: GenerationRequest, error: GenerationError, stage: Optional[Stage] = None) -> GenerationError:
        logger.warning(
            "generation_failed code=%s retryable=%s stage=%s",
            error.code,
            error.retryable,
            stage.value if stage else None,
            extra={"request_id": request.request_id},
        )
        _GENERATIONS.labels(outcome=error.code).inc()
        events.generation_failed(request, error, stage)
        return error
