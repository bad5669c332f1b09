from fastapi import APIRouter, Depends, Query
from typing import Optional
import logging

from presence.dependencies import ADMIN, Actor, get_context, rate_limited, require_role
from presence.models import SecurityStats
from presence.service import PresenceContext

router = APIRouter(prefix="/admin")
logger = logging.getLogger("presence_service")

# Cap on events returned next to the stats
RECENT_EVENTS_LIMIT = 100


@router.get("/security")
async def security_overview(
    hours: float = Query(default=24, gt=0, le=168),
    level: Optional[str] = Query(default=None, pattern="^(LOW|MEDIUM|HIGH|CRITICAL)$"),
    _limit=Depends(rate_limited("general")),
    actor: Actor = Depends(require_role(ADMIN)),
    ctx: PresenceContext = Depends(get_context),
):
    stats = SecurityStats(**ctx.security_log.get_stats(hours))
    events = ctx.security_log.get_recent(hours, level)
    logger.info(f"Security overview requested by {actor.id} ({stats.total} events in {hours}h)")
    return {
        "success": True,
        "hours": hours,
        "stats": stats,
        "events": events[:RECENT_EVENTS_LIMIT],
    }


@router.post("/maintenance/cleanup")
async def run_cleanup(
    _limit=Depends(rate_limited("general")),
    actor: Actor = Depends(require_role(ADMIN)),
    ctx: PresenceContext = Depends(get_context),
):
    results = ctx.run_maintenance()
    logger.info("Maintenance run by %s: %s", actor.id, results)
    return {"success": True, **results}
