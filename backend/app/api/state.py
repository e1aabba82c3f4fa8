"""State API — last published snapshot."""

import json
import logging

from fastapi import APIRouter, HTTPException, Request
from redis.exceptions import RedisError

router = APIRouter(prefix="/api/state", tags=["state"])

logger = logging.getLogger("gateway.api.state")


@router.get("")
async def get_state(request: Request):
    """Latest snapshot: poller memory first, Redis (retained key) as fallback."""
    poller = getattr(request.app.state, "poller", None)
    if poller is None:
        raise HTTPException(503, "Poller not initialized")

    if poller.last_snapshot is not None:
        return poller.last_snapshot

    redis = getattr(request.app.state, "redis", None)
    if redis is not None:
        try:
            raw = await redis.get(poller.state_key)
        except RedisError as exc:
            logger.warning("Redis read failed for %s: %s", poller.state_key, exc)
            raw = None
        if raw:
            try:
                return json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                pass

    raise HTTPException(404, "No state polled yet")


@router.get("/poller")
async def get_poller_status(request: Request):
    poller = getattr(request.app.state, "poller", None)
    if poller is None:
        raise HTTPException(503, "Poller not initialized")
    return {
        "reader": poller.reader.label,
        "table_version": poller.table.version,
        "interval": poller.interval,
        "polls_ok": poller.polls_ok,
        "polls_failed": poller.polls_failed,
        "run_cycle": poller.run_cycle.as_dict(),
    }
