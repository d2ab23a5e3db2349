from datetime import UTC, datetime, timedelta

import pytest

from src.genstream.security import rate_limit as rl


T0 = datetime(2026, 5, 1, 12, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _enabled(monkeypatch):
    monkeypatch.delenv("GENSTREAM_RATE_LIMIT_DISABLED", raising=False)
    monkeypatch.setenv("GENSTREAM_RATE_LIMIT", "2")
    monkeypatch.setenv("GENSTREAM_RATE_LIMIT_WINDOW_SECONDS", "60")


def test_limit_blocks_after_quota_and_reopens_after_window():
    assert rl.rate_limit_action("gen", "s1", now=T0).remaining == 1
    assert rl.rate_limit_action("gen", "s1", now=T0).remaining == 0
    with pytest.raises(rl.RateLimitExceeded) as excinfo:
        rl.rate_limit_action("gen", "s1", now=T0 + timedelta(seconds=10))
    assert excinfo.value.retry_after_seconds == 50
    assert excinfo.value.reset_at == T0 + timedelta(seconds=60)

    assert rl.rate_limit_action("gen", "s1", now=T0 + timedelta(seconds=61)).remaining == 1


def test_sessions_are_counted_separately():
    rl.rate_limit_action("gen", "s1", now=T0)
    rl.rate_limit_action("gen", "s1", now=T0)
    assert rl.rate_limit_action("gen", "s2", now=T0).remaining == 1


def test_disable_flag(monkeypatch):
    monkeypatch.setenv("GENSTREAM_RATE_LIMIT_DISABLED", "true")
    for _ in range(5):
        assert rl.rate_limit_action("gen", "s1", now=T0).remaining == -1
