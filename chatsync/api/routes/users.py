# chatsync/api/routes/users.py

from typing import List

from fastapi import APIRouter, Depends, Request

from chatsync.api.routes.utils import get_identity, get_state, unwrap
from chatsync.models.models import RegisterUserRequest, User
from chatsync.services.auth_service import StaticIdentity

router = APIRouter()


@router.post("/users", response_model=User, status_code=201)
async def register_user(
    body: RegisterUserRequest, request: Request, identity: StaticIdentity = Depends(get_identity)
):
    """
    Create the caller's profile. The display name defaults to the one
    carried by the caller's identity. 409 if the profile already exists.
    """
    display_name = body.display_name or identity.current_display_name() or ""
    service = get_state(request).service
    return unwrap(await service.register_user(identity.current_user_id(), display_name, body.email))


@router.get("/users/me", response_model=User)
async def get_profile(request: Request, identity: StaticIdentity = Depends(get_identity)):
    return unwrap(await get_state(request).service.get_user(identity.current_user_id()))


@router.get("/users/search", response_model=List[User])
async def search_users(q: str, request: Request, identity: StaticIdentity = Depends(get_identity)):
    """Users whose display name starts with ``q`` (case-sensitive), caller excluded."""
    service = get_state(request).service
    return unwrap(await service.search_users(q, identity.current_user_id()))
