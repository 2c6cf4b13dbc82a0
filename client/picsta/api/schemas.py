"""Pydantic schemas for the user and post endpoints this client consumes."""
from datetime import datetime
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from picsta.messaging.schemas import UserRef, as_utc, ref_id, utcnow


class UserProfile(BaseModel):
    """A user profile (``GET /users/profile`` answers with ``id``, search with ``_id``)."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., validation_alias=AliasChoices("id", "_id"))
    username: str = ""
    name: str = ""
    bio: str = ""
    profile_picture: str = Field(default="", alias="profilePicture")
    posts_count: int = Field(default=0, alias="postsCount")
    followers_count: int = Field(default=0, alias="followersCount")
    following_count: int = Field(default=0, alias="followingCount")
    is_following: bool = Field(default=False, alias="isFollowing")

    @field_validator("bio", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class LikeResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    is_liked: bool = Field(..., alias="isLiked")
    likes_count: int = Field(default=0, alias="likesCount")


class SaveResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    is_saved: bool = Field(..., alias="isSaved")


class FollowResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    is_following: bool = Field(..., alias="isFollowing")
    followers_count: int = Field(default=0, alias="followersCount")
    following_count: int = Field(default=0, alias="followingCount")


class Comment(BaseModel):
    """A post comment; replies carry ``parent_comment_id``."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., alias="_id")
    post_id: str = Field(..., alias="post")
    author_id: str = Field(..., alias="author")
    author_profile: Optional[UserRef] = Field(default=None, alias="authorProfile")
    text: str = ""
    parent_comment_id: Optional[str] = Field(default=None, alias="parentComment")
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")

    @model_validator(mode="before")
    @classmethod
    def _flatten_refs(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        author = data.get("author")
        if isinstance(author, dict):
            data["author"] = ref_id(author)
            data.setdefault("authorProfile", author)
        for key in ("post", "parentComment"):
            if isinstance(data.get(key), dict):
                data[key] = ref_id(data[key])
        return data

    @field_validator("created_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)
