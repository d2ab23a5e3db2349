from datetime import UTC, datetime

from src.genstream.config import Settings
from src.genstream.domain.models import STAGE_ORDER, EventKind, GenerationError, GenerationResult, Stage
from src.genstream.infrastructure import events
from src.genstream.infrastructure.counter_store import InMemoryCounterStore
from src.genstream.services.backend import BackendTerminalError, BackendTransientError, BackendUnavailableError
from src.genstream.services.ledger import BudgetLedger
from src.genstream.services.orchestrator import GenerationOrchestrator, estimate_tokens
from src.genstream.services.result_cache import ResultCache
from src.genstream.services.stages import default_stages

from tests.utils import TOKENS_PER_STAGE, ScriptedBackend, make_request


NOW = datetime(2026, 5, 1, 9, tzinfo=UTC)


def _ledger(daily=1_000_000):
    clock = lambda: NOW
    return BudgetLedger(
        store=InMemoryCounterStore(clock=clock),
        settings=Settings(daily_token_limit=daily),
        clock=clock,
    )


def _orchestrator(backend=None, ledger=None, cache=None):
    return GenerationOrchestrator(
        ledger=ledger or _ledger(),
        backend=backend or ScriptedBackend(),
        cache=cache,
    )


def test_estimate_covers_all_stages():
    assert estimate_tokens(default_stages()) == 15_000


def test_successful_run_emits_ordered_events_and_records_actual_tokens():
    backend = ScriptedBackend()
    ledger = _ledger()
    seen = []
    outcome = _orchestrator(backend, ledger).generate(make_request(seed=7), emit=seen.append)

    assert isinstance(outcome, GenerationResult)
    assert backend.stages_called == STAGE_ORDER
    assert [(e.stage, e.kind) for e in seen] == [
        (stage, kind) for stage in STAGE_ORDER for kind in (EventKind.START, EventKind.COMPLETE)
    ]
    assert outcome.intent.category == "saas"
    assert outcome.architecture.pages[0].path == "/"
    assert outcome.files[0].path == "app/page.tsx"
    assert outcome.integration_code[0].integration == "auth"
    assert outcome.cursorrules.startswith("# Rules")
    assert outcome.start_prompt.startswith("# Start")
    assert outcome.seed == 7
    assert outcome.usage["total"] == 4 * TOKENS_PER_STAGE

    # The ledger moves by what the backend reported, not by the estimate.
    assert ledger.current_usage().daily.used == 4 * TOKENS_PER_STAGE


def test_streaming_request_forwards_chunks_between_start_and_complete():
    backend = ScriptedBackend(chunks=2)
    seen = []
    _orchestrator(backend).generate(make_request(stream=True), emit=seen.append)

    intent_events = [e for e in seen if e.stage is Stage.INTENT]
    assert [e.kind for e in intent_events] == [EventKind.START, EventKind.CHUNK, EventKind.CHUNK, EventKind.COMPLETE]
    assert intent_events[1].message == "tok0"


def test_budget_exceeded_runs_no_stage():
    backend = ScriptedBackend()
    ledger = _ledger(daily=100_000)
    ledger.record(90_000)

    outcome = _orchestrator(backend, ledger).generate(make_request())
    assert isinstance(outcome, GenerationError)
    assert outcome.code == "budget_exceeded"
    assert outcome.retryable is False
    assert "Daily" in outcome.message
    assert backend.calls == []
    assert ledger.current_usage().daily.used == 90_000


def test_transient_backend_failure_is_retryable_and_stops_pipeline():
    backend = ScriptedBackend({Stage.ARCHITECTURE: BackendTransientError("503: overloaded")})
    ledger = _ledger()
    seen = []
    outcome = _orchestrator(backend, ledger).generate(make_request(), emit=seen.append)

    assert outcome.code == "backend_transient"
    assert outcome.retryable is True
    assert backend.stages_called == [Stage.INTENT, Stage.ARCHITECTURE]
    assert seen[-1].stage is Stage.ARCHITECTURE and seen[-1].kind is EventKind.START
    assert ledger.current_usage().daily.used == 0


def test_terminal_backend_failure_is_not_retryable():
    backend = ScriptedBackend({Stage.INTENT: BackendTerminalError("400: content policy")})
    outcome = _orchestrator(backend).generate(make_request())
    assert outcome.code == "backend_terminal"
    assert outcome.retryable is False


def test_unparseable_stage_output_is_terminal():
    backend = ScriptedBackend({Stage.CONTEXT: "no delimiters here"})
    outcome = _orchestrator(backend).generate(make_request())
    assert outcome.code == "backend_terminal"
    assert outcome.retryable is False


def test_missing_provider_maps_to_backend_unavailable():
    backend = ScriptedBackend({Stage.INTENT: BackendUnavailableError("No active model provider")})
    outcome = _orchestrator(backend).generate(make_request())
    assert outcome.code == "backend_unavailable"


def test_unexpected_exception_becomes_generation_failed():
    backend = ScriptedBackend({Stage.CODE: KeyError("boom")})
    outcome = _orchestrator(backend).generate(make_request())
    assert outcome.code == "generation_failed"
    assert outcome.retryable is False


def test_ledger_record_failure_still_returns_result(monkeypatch):
    ledger = _ledger()

    def _broken(_tokens):
        raise RuntimeError("store down")

    monkeypatch.setattr(ledger, "record", _broken)
    outcome = _orchestrator(ledger=ledger).generate(make_request())
    assert isinstance(outcome, GenerationResult)


def test_cache_hit_skips_backend_and_ledger():
    backend = ScriptedBackend()
    ledger = _ledger()
    orchestrator = _orchestrator(backend, ledger, cache=ResultCache())

    first = orchestrator.generate(make_request(seed=1))
    second = orchestrator.generate(make_request(seed=1))

    assert first.cached is False
    assert second.cached is True
    assert len(backend.calls) == 4
    assert ledger.current_usage().daily.used == 4 * TOKENS_PER_STAGE


def test_lifecycle_events_are_published(monkeypatch):
    published = []
    monkeypatch.setattr(events, "_publish", lambda kind, payload: published.append((kind, payload)) or True)

    _orchestrator().generate(make_request())
    _orchestrator(ScriptedBackend({Stage.INTENT: BackendTransientError("timeout")})).generate(make_request())

    kinds = [k for k, _ in published]
    assert kinds == ["generation_started", "generation_completed", "generation_started", "generation_failed"]
    assert published[1][1]["tokens"] == 4 * TOKENS_PER_STAGE
    assert published[3][1]["stage"] == "Intent"
