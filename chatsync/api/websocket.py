# chatsync/api/websocket.py

from __future__ import annotations

import json
import logging
from typing import Optional, Type, TypeVar

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, ValidationError

from chatsync.api.routes.utils import resolve_identity
from chatsync.core.errors import ChatError, InvalidArgument
from chatsync.core.state import AppState
from chatsync.models.models import CreateRoomRequest, SendMessageRequest
from chatsync.services.connection_manager import ConnectionManager, error_payload

logger = logging.getLogger(__name__)

router = APIRouter()

M = TypeVar("M", bound=BaseModel)

# ============================================================================
# WEBSOCKET ENDPOINT
# ============================================================================

@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = None,
    user_id: Optional[str] = None,
    user_name: Optional[str] = None,
):
    """
    WebSocket endpoint for live queries and sending messages.

    Protocol:
    =========

    Client -> Server Actions:
    -------------------------
    Watch Own Room List:
        {"action": "watch_rooms"}
        Response: {"type": "watching", "watch_id": "...", "query": "rooms:<user>"}

    Watch Room Messages:
        {"action": "watch_messages", "room_id": "..."}
        Response: {"type": "watching", "watch_id": "...", "query": "messages:<room>"}

    Stop Watching:
        {"action": "unwatch", "watch_id": "..."}
        Response: {"type": "unwatched", "watch_id": "..."}

    Send Message:
        {"action": "send_message", "room_id": "...", "content": "...",
         "type": "TEXT", "image_url": null}
        Response: {"type": "message_sent", "message": {...}}

    Create Room:
        {"action": "create_room", "participant_ids": [...], "name": "...", "is_group": true}
        Response: {"type": "room_created", "room": {...}}

    Search Users:
        {"action": "search_users", "query": "An"}
        Response: {"type": "users", "users": [...]}

    Server -> Client Pushes:
    ------------------------
    Snapshot (full ordered result, after every relevant change):
        {"type": "snapshot", "watch_id": "...", "sequence": 12, "items": [...]}

    Error (in-band; a watch stays active after a snapshot error):
        {"type": "error", "code": "not_found", "message": "...", ...}

    Lifecycle:
    ==========
    1. Client connects with ?token=<jwt> (or ?user_id= in header auth mode)
    2. Connection closed with 1008 if the caller cannot be identified
    3. Client watches queries and sends actions
    4. On disconnect, every watch is closed
    """
    state: AppState = websocket.app.state.chat
    try:
        identity = resolve_identity(state, token, user_id, user_name)
    except ChatError as e:
        logger.info("Rejected WebSocket connection: %s", e.message)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    manager = state.connections
    await manager.connect(websocket, identity.current_user_id())

    try:
        while True:
            data = await websocket.receive_text()

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await manager.send(websocket, error_payload(InvalidArgument("Invalid JSON")))
                continue
            if not isinstance(message, dict):
                await manager.send(websocket, error_payload(InvalidArgument("Expected a JSON object")))
                continue

            action = message.get("action")
            logger.debug("Websocket input: action=%s user=%s", action, identity.current_user_id())
            await handle_action(state, manager, websocket, identity.current_user_id(), action, message)

    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception as e:
        logger.error("WebSocket error: %s", e)
        manager.disconnect(websocket)


def _parse(model: Type[M], message: dict) -> Optional[M]:
    """Validate an action body against its request model; None if invalid."""
    try:
        return model.model_validate(message)
    except ValidationError as e:
        logger.info("Rejected %s body: %s", model.__name__, e.errors())
        return None


async def handle_action(
    state: AppState,
    manager: ConnectionManager,
    websocket: WebSocket,
    user_id: str,
    action: Optional[str],
    message: dict,
) -> None:
    service = state.service

    if action == "watch_rooms":
        await manager.watch_rooms(websocket)

    elif action == "watch_messages":
        room_id = message.get("room_id")
        if isinstance(room_id, str) and room_id:
            await manager.watch_messages(websocket, room_id)
        else:
            await manager.send(websocket, error_payload(InvalidArgument("room_id is required"), action=action))

    elif action == "unwatch":
        watch_id = message.get("watch_id")
        if watch_id:
            await manager.unwatch(websocket, watch_id)

    elif action == "send_message":
        room_id = message.get("room_id")
        body = _parse(SendMessageRequest, message)
        if not isinstance(room_id, str) or not room_id or body is None:
            await manager.send(websocket, error_payload(InvalidArgument("Invalid send_message body"), action=action))
            return
        result = await service.send_message(
            user_id, room_id, body.content, type=body.type, image_url=body.image_url
        )
        if result.ok:
            await manager.send(websocket, {"type": "message_sent", "message": result.value.model_dump(mode="json")})
        else:
            await manager.send(websocket, error_payload(result.error, action=action))

    elif action == "create_room":
        body = _parse(CreateRoomRequest, message)
        if body is None:
            await manager.send(websocket, error_payload(InvalidArgument("Invalid create_room body"), action=action))
            return
        result = await service.create_room(
            user_id, body.participant_ids, name=body.name, is_group=body.is_group
        )
        if result.ok:
            await manager.send(websocket, {"type": "room_created", "room": result.value.model_dump(mode="json")})
        else:
            await manager.send(websocket, error_payload(result.error, action=action))

    elif action == "search_users":
        query = message.get("query", "")
        if not isinstance(query, str):
            await manager.send(websocket, error_payload(InvalidArgument("query must be a string"), action=action))
            return
        result = await service.search_users(query, user_id)
        if result.ok:
            users = [u.model_dump(mode="json") for u in result.value]
            await manager.send(websocket, {"type": "users", "users": users})
        else:
            await manager.send(websocket, error_payload(result.error, action=action))

    else:
        await manager.send(websocket, error_payload(InvalidArgument(f"Unknown action: {action}")))
