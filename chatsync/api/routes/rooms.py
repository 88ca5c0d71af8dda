# chatsync/api/routes/rooms.py

from typing import List

from fastapi import APIRouter, Depends, Request

from chatsync.api.routes.utils import get_identity, get_state, unwrap
from chatsync.models.models import (
    AssistantReply,
    AssistantRequest,
    ChatRoom,
    CreateRoomRequest,
    Message,
    SendMessageRequest,
)
from chatsync.services.auth_service import StaticIdentity

router = APIRouter()

# ============================================================================
# ROOM ENDPOINTS
# ============================================================================

@router.get("/rooms", response_model=List[ChatRoom])
async def list_rooms(request: Request, identity: StaticIdentity = Depends(get_identity)):
    """
    List the caller's rooms, newest activity first.

    This is a one-shot snapshot; clients that want updates watch the same
    query over the WebSocket ("watch_rooms").
    """
    service = get_state(request).service
    return unwrap(await service.room_snapshot(identity.current_user_id()))


@router.post("/rooms", response_model=ChatRoom, status_code=201)
async def create_room(
    body: CreateRoomRequest, request: Request, identity: StaticIdentity = Depends(get_identity)
):
    """
    Create a room with the caller as creator.

    For private rooms (``is_group`` false) an existing room with the same two
    participants is returned instead of creating a duplicate.

    Raises:
        HTTPException: 400 on invalid room config, 409 on a creation race
    """
    service = get_state(request).service
    return unwrap(
        await service.create_room(
            identity.current_user_id(),
            body.participant_ids,
            name=body.name,
            is_group=body.is_group,
        )
    )


@router.get("/rooms/{room_id}", response_model=ChatRoom)
async def get_room(room_id: str, request: Request, identity: StaticIdentity = Depends(get_identity)):
    return unwrap(await get_state(request).service.get_room(room_id))


@router.get("/rooms/{room_id}/messages", response_model=List[Message])
async def list_messages(room_id: str, request: Request, identity: StaticIdentity = Depends(get_identity)):
    """Messages of a room, oldest first."""
    return unwrap(await get_state(request).service.message_snapshot(room_id))


@router.post("/rooms/{room_id}/messages", response_model=Message, status_code=201)
async def send_message(
    room_id: str,
    body: SendMessageRequest,
    request: Request,
    identity: StaticIdentity = Depends(get_identity),
):
    """
    Send a message as the caller.

    Raises:
        HTTPException: 400 on empty text, 404 if the room does not exist
    """
    service = get_state(request).service
    return unwrap(
        await service.send_message(
            identity.current_user_id(),
            room_id,
            body.content,
            type=body.type,
            image_url=body.image_url,
        )
    )


@router.post("/rooms/{room_id}/assistant", response_model=AssistantReply)
async def ask_assistant(
    room_id: str,
    body: AssistantRequest,
    request: Request,
    identity: StaticIdentity = Depends(get_identity),
):
    """Ask the assistant about the conversation. 503 if it is unavailable."""
    service = get_state(request).service
    reply = unwrap(await service.ask_assistant(identity.current_user_id(), room_id, body.prompt))
    return AssistantReply(room_id=room_id, reply=reply)
