"""Run-history aggregation for the analytics screen."""

import logging
import math

import db
from auth import Session

logger = logging.getLogger(__name__)

VALID_PERIODS = {"7d", "30d", "90d", "all"}


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def empty_analytics() -> dict:
    return {
        "total_runs": 0,
        "total_cost": 0.0,
        "avg_latency": 0,
        "success_rate": 0,
        "model_breakdown": [],
    }


def compute_analytics(runs: list[dict]) -> dict:
    """Summarize a set of run rows.

    total_cost treats a missing cost as 0, avg_latency a missing latency as 0.
    success_rate counts only status == 'completed' as success, over all runs,
    so pending runs lower it. model_breakdown follows first-appearance order
    and its percentages are left unrounded.
    """
    if not runs:
        return empty_analytics()

    total = len(runs)
    total_cost = sum(r.get("cost_usd") or 0 for r in runs)
    total_latency = sum(r.get("latency_ms") or 0 for r in runs)
    completed = sum(1 for r in runs if r.get("status") == "completed")

    counts: dict[str, int] = {}
    for r in runs:
        counts[r.get("model")] = counts.get(r.get("model"), 0) + 1

    return {
        "total_runs": total,
        "total_cost": round(total_cost, 6),
        "avg_latency": _round_half_up(total_latency / total),
        "success_rate": _round_half_up(completed / total * 100),
        "model_breakdown": [
            {"model": model, "count": count, "percentage": count / total * 100}
            for model, count in counts.items()
        ],
    }


async def get_user_analytics(session: Session, period: str = "all") -> dict:
    """Load the session user's runs for `period` and aggregate them."""
    if period not in VALID_PERIODS:
        raise ValueError(f"period must be one of {sorted(VALID_PERIODS)}")
    runs = await db.get_analytics_runs(session.user_id, period)
    logger.debug("Aggregating %d runs for user_id=%s period=%s", len(runs), session.user_id, period)
    return compute_analytics(runs)
