# chatsync/core/errors.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


# ============================================================================
# ERROR TAXONOMY
# ============================================================================

class ChatError(Exception):
    """
    Base class for every failure the chat core reports to callers.

    Subclasses carry a stable ``code`` which the HTTP layer maps to a status
    code. The message is meant for callers, so it never contains Store
    internals (those are only logged).
    """

    code = "error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class Unauthorized(ChatError):
    """No resolvable caller identity."""

    code = "unauthorized"


class NotFound(ChatError):
    code = "not_found"


class InvalidArgument(ChatError):
    code = "invalid_argument"


class Conflict(ChatError):
    """A unique create lost a race (or a key already exists)."""

    code = "conflict"


class Unavailable(ChatError):
    """Store or transport timeout / failure."""

    code = "unavailable"


# ============================================================================
# RESULT
# ============================================================================

@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Outcome of a service operation: either a value or a ChatError.

    Usage:
        result = await service.send_message(user_id, room_id, "hi")
        if result.ok:
            message = result.value
        else:
            logger.warning(result.error.message)
    """

    value: Optional[T] = None
    error: Optional[ChatError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ChatError) -> "Result[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value, or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value
