"""Analytics and dashboard routes."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

import analytics
import auth
import db
from schemas import AnalyticsResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["analytics"])

RECENT_RUNS = 5


@router.get("/api/analytics")
async def get_analytics(period: str = "all", session: auth.Session = Depends(auth.get_session)):
    """Summary statistics and per-model breakdown over the user's runs.

    `empty` is true when there are no runs, so the client shows an empty
    state instead of metric cards.
    """
    try:
        stats = await analytics.get_user_analytics(session, period)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return AnalyticsResponse(period=period, empty=stats["total_runs"] == 0, **stats)


@router.get("/api/dashboard")
async def get_dashboard(session: auth.Session = Depends(auth.get_session)):
    """Prompt and run counts, the most recent runs and their latency/success cards."""
    recent = await db.get_runs(session.user_id, limit=RECENT_RUNS)
    recent_stats = analytics.compute_analytics(recent)
    return {
        "total_prompts": await db.count_prompts(session.user_id),
        "total_runs": await db.count_runs(session.user_id),
        "recent_runs": recent,
        "recent_avg_latency": recent_stats["avg_latency"],
        "recent_success_rate": recent_stats["success_rate"],
    }
