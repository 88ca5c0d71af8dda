# chatsync/api/routes/root.py

from fastapi import APIRouter

from chatsync import __version__

router = APIRouter()


@router.get("/")
async def root():
    """Service name, version and where to find things."""
    return {
        "message": "chatsync - real-time chat synchronization",
        "version": __version__,
        "live_queries": ["rooms:<user_id>", "messages:<room_id>"],
        "endpoints": {
            "websocket": "/ws",
            "rooms": "/rooms",
            "messages": "/rooms/{room_id}/messages",
            "assistant": "/rooms/{room_id}/assistant",
            "users": "/users",
            "search": "/users/search?q=",
            "health": "/health",
        },
    }
