import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _isolated_service_state(monkeypatch):
    """Each test starts with a local counter store, empty windows and no rate limiting."""
    from src.genstream.api.routers import generation
    from src.genstream.infrastructure import counter_store
    from src.genstream.security import rate_limit
    from src.genstream.services import ledger

    monkeypatch.setenv("GENSTREAM_LEDGER_STORE", "memory")
    monkeypatch.setenv("GENSTREAM_RATE_LIMIT_DISABLED", "1")
    monkeypatch.delenv("REDIS_URL", raising=False)
    counter_store.reset_counter_store()
    ledger.reset_ledger()
    rate_limit.reset_rate_limits()
    monkeypatch.setattr(generation, "_orchestrator", None)
    yield
    counter_store.reset_counter_store()
    ledger.reset_ledger()
    rate_limit.reset_rate_limits()
