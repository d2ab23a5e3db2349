"""Organisation-wide token budget.

Two nested windows are tracked: a daily window that resets at midnight UTC and
a monthly window that resets on the first of the month UTC. ``check_limit`` is
an advisory pre-flight estimate, never a reservation; ``record`` is a single
atomic increment per window against the counter store.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from prometheus_client import Counter

from ..config import CRITICAL_THRESHOLD, Settings, load_settings
from ..domain.models import AlertLevel, BudgetScope, BudgetWindow, SpendCheckResult, UsageSnapshot
from ..infrastructure.counter_store import Clock, CounterStore, get_counter_store, utcnow


logger = logging.getLogger("genstream.ledger")

KEY_PREFIX = "genstream:tokens"

# Blended pricing per million tokens, assuming 30% input / 70% output.
_INPUT_SHARE = 0.3
_INPUT_USD_PER_M = 3.0
_OUTPUT_USD_PER_M = 15.0

_TOKENS_RECORDED = Counter(
    "genstream_tokens_recorded_total",
    "Tokens recorded against the organisation budget",
)


def end_of_day(now: datetime) -> datetime:
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start + timedelta(days=1)


def end_of_month(now: datetime) -> datetime:
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def window_key(scope: BudgetScope, now: datetime) -> str:
    if scope is BudgetScope.DAILY:
        return f"{KEY_PREFIX}:daily:{now:%Y-%m-%d}"
    return f"{KEY_PREFIX}:monthly:{now:%Y-%m}"


def estimate_cost(tokens: int) -> Dict[str, Any]:
    input_tokens = tokens * _INPUT_SHARE
    output_tokens = tokens - input_tokens
    usd = (input_tokens * _INPUT_USD_PER_M + output_tokens * _OUTPUT_USD_PER_M) / 1_000_000
    return {"usd": usd, "formatted": f"${usd:.4f}"}


class BudgetLedger:
    def __init__(
        self,
        store: Optional[CounterStore] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._store = store if store is not None else get_counter_store()
        self._settings = settings or load_settings()
        self._clock = clock or utcnow

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def mode(self) -> str:
        return self._store.mode

    def _limit(self, scope: BudgetScope) -> int:
        if scope is BudgetScope.DAILY:
            return self._settings.daily_token_limit
        return self._settings.monthly_token_limit

    def _reset_at(self, scope: BudgetScope, now: datetime) -> datetime:
        return end_of_day(now) if scope is BudgetScope.DAILY else end_of_month(now)

    def _window(self, scope: BudgetScope, now: datetime) -> BudgetWindow:
        used = self._store.get(window_key(scope, now))
        return BudgetWindow(
            scope=scope,
            used=max(0, used),
            limit=self._limit(scope),
            reset_at=self._reset_at(scope, now),
        )

    def current_usage(self) -> UsageSnapshot:
        now = self._clock()
        return UsageSnapshot(
            daily=self._window(BudgetScope.DAILY, now),
            monthly=self._window(BudgetScope.MONTHLY, now),
        )

    def check_limit(self, estimated_tokens: int) -> SpendCheckResult:
        if estimated_tokens < 0:
            raise ValueError("estimated_tokens must be non-negative")
        usage = self.current_usage()
        for window, label in ((usage.daily, "Daily"), (usage.monthly, "Monthly")):
            if window.used + estimated_tokens > window.limit:
                return SpendCheckResult(
                    allowed=False,
                    reason=f"{label} token limit ({window.limit:,}) would be exceeded",
                    alert_level=AlertLevel.CRITICAL,
                    usage=usage,
                )

        # Integer cross-multiplication so no rounded percentage takes part in the decision.
        level = AlertLevel.NORMAL
        for window in (usage.daily, usage.monthly):
            after = (window.used + estimated_tokens) * 100
            if after >= CRITICAL_THRESHOLD * window.limit:
                level = AlertLevel.CRITICAL
            elif after >= self._settings.alert_threshold * window.limit and level is AlertLevel.NORMAL:
                level = AlertLevel.WARNING
        return SpendCheckResult(allowed=True, alert_level=level, usage=usage)

    def record(self, actual_tokens: int) -> UsageSnapshot:
        if actual_tokens < 0:
            raise ValueError("actual_tokens must be non-negative")
        now = self._clock()
        for scope in (BudgetScope.DAILY, BudgetScope.MONTHLY):
            self._store.incr(window_key(scope, now), actual_tokens, self._reset_at(scope, now))
        _TOKENS_RECORDED.inc(actual_tokens)

        usage = self.current_usage()
        for window in (usage.daily, usage.monthly):
            if window.used * 100 >= self._settings.alert_threshold * window.limit:
                logger.warning(
                    "budget_alert %s usage at %s%% (%s tokens)",
                    window.scope.value,
                    window.percent_used,
                    f"{window.used:,}",
                    extra={"scope": window.scope.value, "used": window.used, "limit": window.limit},
                )
        return usage

    def usage_report(self) -> Dict[str, Any]:
        usage = self.current_usage()
        return {
            "usage": usage.snapshot(),
            "tracking": self.mode,
            "limits": {
                "daily": self._settings.daily_token_limit,
                "monthly": self._settings.monthly_token_limit,
                "alertThreshold": self._settings.alert_threshold,
            },
            "estimatedMonthlyCost": estimate_cost(usage.monthly.used)["formatted"],
        }


_ledger: Optional[BudgetLedger] = None


def get_ledger() -> BudgetLedger:
    global _ledger
    if _ledger is None:
        _ledger = BudgetLedger()
    return _ledger


def reset_ledger() -> None:
    global _ledger
    _ledger = None
