# chatsync/api/routes/health.py

from datetime import datetime, timezone

from fastapi import APIRouter, Request

from chatsync.api.routes.utils import get_state

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    """
    Health check endpoint.

    Returns current system status, live query and connection counts, and the
    event log position per collection.
    """
    state = get_state(request)
    uptime_seconds = (datetime.now(timezone.utc) - state.started_at).total_seconds()
    return {
        "status": "healthy",
        "uptime_hours": round(uptime_seconds / 3600, 2),
        "connections": len(state.connections.connection_users),
        "watches": state.connections.watch_count,
        "subscriptions": state.subscriptions.subscription_count,
        "live_queries": len(state.subscriptions.groups),
        "pushes": state.subscriptions.push_stats(),
        "log_batch": state.event_log.batch,
        "log_heads": state.event_log.heads(),
    }
