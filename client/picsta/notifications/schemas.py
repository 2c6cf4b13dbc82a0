"""Pydantic schemas for notifications."""
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from picsta.messaging.schemas import UserRef, as_utc, ref_id, utcnow


class NotificationKind(str, Enum):
    """What the actor did.

    Attributes:
        LIKE: Actor liked one of the recipient's posts.
        COMMENT: Actor commented on one of the recipient's posts.
        FOLLOW: Actor started following the recipient.
    """
    LIKE = "like"
    COMMENT = "comment"
    FOLLOW = "follow"


class Notification(BaseModel):
    """A notification as returned by ``GET /notifications``."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., alias="_id")
    recipient_id: Optional[str] = Field(default=None, alias="recipient")
    actor_id: str = Field(..., alias="sender")
    actor: Optional[UserRef] = Field(default=None, alias="actorProfile")
    kind: NotificationKind = Field(..., alias="type")
    post_id: Optional[str] = Field(default=None, alias="post")
    comment_id: Optional[str] = Field(default=None, alias="comment")
    is_read: bool = Field(default=False, alias="isRead")
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")

    @model_validator(mode="before")
    @classmethod
    def _flatten_refs(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        sender = data.get("sender")
        if isinstance(sender, dict):
            data["sender"] = ref_id(sender)
            data.setdefault("actorProfile", sender)
        for key in ("recipient", "post", "comment"):
            if isinstance(data.get(key), dict):
                data[key] = ref_id(data[key])
        return data

    @field_validator("created_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    def describe(self) -> str:
        """One-line text for the notification list."""
        who = self.actor.username if self.actor and self.actor.username else "Someone"
        if self.kind == NotificationKind.LIKE:
            return f"{who} liked your post."
        if self.kind == NotificationKind.COMMENT:
            return f"{who} commented on your post."
        if self.kind == NotificationKind.FOLLOW:
            return f"{who} started following you."
        return f"{who} interacted with you."
