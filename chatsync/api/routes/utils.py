# chatsync/api/routes/utils.py

from __future__ import annotations

from typing import Optional, TypeVar

from fastapi import Header, HTTPException, Request

from chatsync.core.errors import ChatError, Result, Unauthorized
from chatsync.core.state import AppState
from chatsync.services.auth_service import StaticIdentity, bearer_token

T = TypeVar("T")

STATUS_CODES = {
    "unauthorized": 401,
    "not_found": 404,
    "invalid_argument": 400,
    "conflict": 409,
    "unavailable": 503,
}


def get_state(request: Request) -> AppState:
    return request.app.state.chat


def http_error(error: ChatError) -> HTTPException:
    return HTTPException(status_code=STATUS_CODES.get(error.code, 500), detail=error.message)


def unwrap(result: Result[T]) -> T:
    """Return the result's value or raise the matching HTTPException."""
    if not result.ok:
        raise http_error(result.error)
    return result.value


def resolve_identity(
    state: AppState,
    token: Optional[str] = None,
    user_id: Optional[str] = None,
    display_name: Optional[str] = None,
) -> StaticIdentity:
    """
    Work out who the caller is according to AUTH_MODE.

    - "token": ``token`` must be a valid signed token
    - "header": ``user_id`` is trusted as-is (gateway already authenticated)

    Raises:
        Unauthorized: No usable identity
    """
    if state.settings.AUTH_MODE == "header":
        if not user_id:
            raise Unauthorized("Not authenticated")
        return StaticIdentity(user_id=user_id, display_name=display_name)
    return state.authenticator.identify(token)


async def get_identity(
    request: Request,
    authorization: Optional[str] = Header(default=None),
    x_user_id: Optional[str] = Header(default=None),
    x_user_name: Optional[str] = Header(default=None),
) -> StaticIdentity:
    """
    Resolve the current caller. Use as dependency for protected endpoints.
    """
    try:
        return resolve_identity(get_state(request), bearer_token(authorization), x_user_id, x_user_name)
    except ChatError as e:
        raise http_error(e)
