"""Per-run token accounting with a rough USD estimate per stage."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Dict, List

from ..domain.models import STAGE_ORDER, Stage

# USD per million tokens; unknown models are priced as the premium tier.
MODEL_PRICING: Dict[str, Dict[str, float]] = {
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gemini-2.5-flash": {"input": 0.30, "output": 2.50},
    "gemini-2.5-pro": {"input": 1.25, "output": 10.00},
    "default": {"input": 3.00, "output": 15.00},
}


@dataclass
class StageUsage:
    stage: Stage
    input_tokens: int
    output_tokens: int
    model: str
    duration_ms: float = 0.0
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class TokenTracker:
    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        self._usage: List[StageUsage] = []

    def record(self, usage: StageUsage) -> None:
        self._usage.append(usage)

    @property
    def total_tokens(self) -> int:
        return sum(u.input_tokens + u.output_tokens for u in self._usage)

    def summary(self) -> Dict[str, Any]:
        by_stage: Dict[str, Dict[str, Any]] = {
            s.value: {"input": 0, "output": 0, "cost": 0.0} for s in STAGE_ORDER
        }
        total_in = total_out = 0
        total_cost = 0.0
        for u in self._usage:
            pricing = MODEL_PRICING.get(u.model, MODEL_PRICING["default"])
            cost = (u.input_tokens * pricing["input"] + u.output_tokens * pricing["output"]) / 1_000_000
            total_in += u.input_tokens
            total_out += u.output_tokens
            total_cost += cost
            bucket = by_stage[u.stage.value]
            bucket["input"] += u.input_tokens
            bucket["output"] += u.output_tokens
            bucket["cost"] = round(bucket["cost"] + cost, 6)
        return {
            "input": total_in,
            "output": total_out,
            "total": total_in + total_out,
            "estimated_cost": round(total_cost, 4),
            "by_stage": by_stage,
        }

    def export_metrics(self) -> str:
        summary = self.summary()
        lines = [f"generation complete run={self.run_id}"]
        for stage in STAGE_ORDER:
            bucket = summary["by_stage"][stage.value]
            if not bucket["input"] and not bucket["output"]:
                continue
            lines.append(f"  {stage.value:<12}: {bucket['input']:>5} in / {bucket['output']:>5} out")
        lines.append(
            f"  Total: {summary['input']} in / {summary['output']} out | Est. cost: ${summary['estimated_cost']:.2f}"
        )
        return "\n".join(lines)
