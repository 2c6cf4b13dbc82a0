"""Pydantic schemas for conversations and messages.

The models accept the server's wire names (``_id``, ``chat``, ``sender``,
``createdAt``, ...) and Python names alike. Populated references such as
``sender: {_id, username, ...}`` are reduced to their ids, with the sender's
display fields kept on ``sender_profile``.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ref_id(value: Any) -> Any:
    """Reduce a populated reference (``{"_id": ...}``) to its id."""
    if isinstance(value, dict):
        return value.get("_id") or value.get("id")
    return value


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class MessageKind(str, Enum):
    """Type of message payload.

    Attributes:
        TEXT: Plain text message.
        POST: A shared post (``post_id`` is set).
        IMAGE: Image attachment (``media_url`` is set).
        VIDEO: Video attachment.
        FILE: Generic file attachment.
    """
    TEXT = "text"
    POST = "post"
    IMAGE = "image"
    VIDEO = "video"
    FILE = "file"


class DeliveryState(str, Enum):
    """Client-side delivery state of a message.

    ``pending -> sent | failed``; ``failed -> pending`` on retry. ``sent`` is
    terminal. Messages received from the server are always ``sent``.
    """
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class ConversationKind(str, Enum):
    DIRECT = "direct"
    GROUP = "group"


class UserRef(BaseModel):
    """Display fields of a populated user reference."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., validation_alias=AliasChoices("_id", "id"))
    username: str = ""
    name: str = ""
    profile_picture: str = Field(default="", alias="profilePicture")


class Message(BaseModel):
    """A chat message, either server-canonical or a local optimistic entry.

    Attributes:
        id: Canonical server id, or the temp id while the message is pending.
        conversation_id: Conversation (chat) the message belongs to.
        sender_id: Sender's user id.
        kind: Payload type.
        content: Message text.
        post_id: Shared post id for ``kind == post``.
        media_url: Attachment URL for media kinds.
        created_at: Creation timestamp (UTC).
        client_id: Temp id used to correlate an optimistic send with the
            server's copy; echoed back by servers that support it.
        state: Delivery state (local only, never sent on the wire).
        error: Last send error for ``failed`` messages.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., alias="_id")
    conversation_id: str = Field(..., alias="chat")
    sender_id: str = Field(..., alias="sender")
    sender_profile: Optional[UserRef] = Field(default=None, alias="senderProfile")
    kind: MessageKind = Field(default=MessageKind.TEXT, alias="type")
    content: str = ""
    post_id: Optional[str] = Field(default=None, alias="post")
    media_url: str = Field(default="", alias="mediaUrl")
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    client_id: Optional[str] = Field(default=None, alias="clientId")
    state: DeliveryState = DeliveryState.SENT
    error: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_refs(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        sender = data.get("sender")
        if isinstance(sender, dict):
            data["sender"] = ref_id(sender)
            data.setdefault("senderProfile", sender)
        for key in ("chat", "post"):
            if isinstance(data.get(key), dict):
                data[key] = ref_id(data[key])
        return data

    @field_validator("content", "media_url", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("created_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def is_pending(self) -> bool:
        return self.state == DeliveryState.PENDING

    @property
    def is_failed(self) -> bool:
        return self.state == DeliveryState.FAILED


class OutgoingMessage(BaseModel):
    """Payload the caller hands to the delivery layer."""
    kind: MessageKind = MessageKind.TEXT
    content: str = ""
    post_id: Optional[str] = None
    media_url: Optional[str] = None

    @model_validator(mode="after")
    def _has_payload(self) -> "OutgoingMessage":
        if not self.content.strip() and not self.post_id and not self.media_url:
            raise ValueError("message needs content, a post or a media url")
        return self


class UnreadEntry(BaseModel):
    user: str
    count: int = 0

    @field_validator("user", mode="before")
    @classmethod
    def _user_id(cls, value: Any) -> Any:
        return ref_id(value)


class Conversation(BaseModel):
    """A direct or group chat as listed by ``GET /chats``."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., alias="_id")
    is_group: bool = Field(default=False, alias="isGroup")
    name: str = ""
    participants: List[str] = Field(default_factory=list)
    participant_profiles: List[UserRef] = Field(default_factory=list, alias="participantProfiles")
    last_message: Optional[Message] = Field(default=None, alias="lastMessage")
    last_message_id: Optional[str] = Field(default=None, alias="lastMessageId")
    unread_counts: List[UnreadEntry] = Field(default_factory=list, alias="unreadCounts")
    hidden_by: List[str] = Field(default_factory=list, alias="hiddenBy")
    updated_at: datetime = Field(default_factory=utcnow, alias="updatedAt")

    @model_validator(mode="before")
    @classmethod
    def _flatten_refs(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        participants = data.get("participants") or []
        profiles = [p for p in participants if isinstance(p, dict)]
        if profiles:
            data.setdefault("participantProfiles", profiles)
        # Participant set: unique, first occurrence wins.
        seen: List[str] = []
        for p in participants:
            pid = ref_id(p)
            if pid and pid not in seen:
                seen.append(pid)
        data["participants"] = seen
        last = data.get("lastMessage")
        if isinstance(last, str):
            data["lastMessageId"] = last
            data["lastMessage"] = None
        elif isinstance(last, dict):
            data.setdefault("lastMessageId", last.get("_id") or last.get("id"))
        data["hiddenBy"] = [ref_id(h) for h in data.get("hiddenBy") or []]
        return data

    @field_validator("updated_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def kind(self) -> ConversationKind:
        return ConversationKind.GROUP if self.is_group else ConversationKind.DIRECT

    def unread_for(self, user_id: str) -> int:
        """Server-side unread counter for a participant (0 if absent)."""
        for entry in self.unread_counts:
            if entry.user == user_id:
                return max(entry.count, 0)
        return 0

    def other_participants(self, user_id: str) -> List[str]:
        return [p for p in self.participants if p != user_id]
