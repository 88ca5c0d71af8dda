# chatsync/models/models.py
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel, Field

UNKNOWN_USER = "unknown user"
IMAGE_SUMMARY = "image"
AI_ASSISTANT_ID = "AI_ASSISTANT"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# VERSIONED RECORDS
# ============================================================================

class Record(BaseModel):
    """
    Base for everything persisted in a Store.

    Records are stored as plain JSON-compatible dicts. ``schema_version`` is
    written with every record; ``from_record`` upgrades older layouts one
    version at a time through ``_migrations`` before validation.
    """

    SCHEMA_VERSION: ClassVar[int] = 1

    schema_version: int = 1

    @classmethod
    def _migrations(cls) -> Dict[int, Any]:
        return {}

    @classmethod
    def from_record(cls, record: Dict[str, Any]):
        data = dict(record)
        version = data.get("schema_version", 1)
        migrations = cls._migrations()
        while version < cls.SCHEMA_VERSION:
            data = migrations[version](data)
            version += 1
            data["schema_version"] = version
        return cls.model_validate(data)

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


def _user_v1_to_v2(data: dict) -> dict:
    # v1 records used the auth provider's "uid" key
    if "uid" in data and "id" not in data:
        data["id"] = data.pop("uid")
    data.pop("photo_url", None)
    data.pop("is_online", None)
    data.pop("last_seen", None)
    return data


def _room_v1_to_v2(data: dict) -> dict:
    if "participants" in data:
        data["participant_ids"] = data.pop("participants")
    if "last_message" in data:
        data["last_message_summary"] = data.pop("last_message")
    return data


def _message_v1_to_v2(data: dict) -> dict:
    if "senderid" in data and "sender_id" not in data:
        data["sender_id"] = data.pop("senderid")
    if isinstance(data.get("type"), str):
        data["type"] = data["type"].upper()
    if data.get("image_url") == "":
        data["image_url"] = None
    return data


class User(Record):
    SCHEMA_VERSION: ClassVar[int] = 2

    schema_version: int = 2
    id: str
    display_name: str
    email: str = ""
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def _migrations(cls):
        return {1: _user_v1_to_v2}


class MessageType(str, Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    SYSTEM = "SYSTEM"


class ChatRoom(Record):
    """
    A private (exactly two participants) or group (named) room.

    ``last_message_*`` fields are derived from the newest message and are
    written only by the message-append path.
    """

    SCHEMA_VERSION: ClassVar[int] = 2

    schema_version: int = 2
    id: str
    is_group: bool = False
    participant_ids: List[str]
    participant_names: Dict[str, str] = Field(default_factory=dict)
    name: str = ""
    created_by: str
    created_at: datetime = Field(default_factory=utcnow)
    last_message_summary: str = ""
    last_message_sender_id: str = ""
    last_message_sender_name: str = ""
    last_message_time: Optional[datetime] = None

    @classmethod
    def _migrations(cls):
        return {1: _room_v1_to_v2}

    def other_participant_name(self, current_user_id: str) -> str:
        if not self.is_group and len(self.participant_ids) == 2:
            other = next((p for p in self.participant_ids if p != current_user_id), None)
            return self.participant_names.get(other, UNKNOWN_USER)
        return self.name

    def display_name_for(self, current_user_id: str) -> str:
        """Room title as seen by ``current_user_id``."""
        if self.is_group:
            return self.name
        return self.other_participant_name(current_user_id)


class Message(Record):
    SCHEMA_VERSION: ClassVar[int] = 2

    schema_version: int = 2
    id: str
    chat_room_id: str
    sender_id: str
    sender_name: str = ""
    content: str = ""
    type: MessageType = MessageType.TEXT
    timestamp: datetime = Field(default_factory=utcnow)
    image_url: Optional[str] = None
    sequence: int = 0

    @classmethod
    def _migrations(cls):
        return {1: _message_v1_to_v2}

    def summary(self) -> str:
        """Text shown as the room's last message."""
        if self.type == MessageType.IMAGE:
            return IMAGE_SUMMARY
        return self.content


# ============================================================================
# REQUEST BODIES
# ============================================================================

class RegisterUserRequest(BaseModel):
    display_name: Optional[str] = None
    email: str = ""


class CreateRoomRequest(BaseModel):
    participant_ids: List[str]
    name: Optional[str] = None
    is_group: bool = False


class SendMessageRequest(BaseModel):
    content: str = ""
    type: MessageType = MessageType.TEXT
    image_url: Optional[str] = None


class AssistantRequest(BaseModel):
    prompt: str


class AssistantReply(BaseModel):
    room_id: str
    reply: str
