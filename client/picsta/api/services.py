"""Typed wrappers for the Picsta REST resources this client consumes.

Each service takes a shared :class:`ApiClient` and returns pydantic models.
Errors propagate unchanged from the client (ApiError / TransportError).
"""
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from picsta.messaging.schemas import Conversation, Message, MessageKind
from picsta.notifications.schemas import Notification

from .client import ApiClient
from .schemas import Comment, FollowResult, LikeResult, SaveResult, UserProfile

logger = logging.getLogger(__name__)

# Default page size for message history pagination
DEFAULT_PAGE_SIZE = 50


class ChatApi:
    """``/chats``: conversation list, create-or-get and hide."""

    def __init__(self, api: ApiClient) -> None:
        self._api = api

    async def list_chats(self) -> List[Conversation]:
        """Conversations visible to the user, most recently updated first."""
        body = await self._api.get("/chats")
        return [Conversation.model_validate(c) for c in body.get("data") or []]

    async def create_or_get(self, user_id: str) -> Conversation:
        """Return the direct chat with ``user_id``, creating it if needed."""
        body = await self._api.post("/chats", json={"userId": user_id})
        return Conversation.model_validate(body["data"])

    async def hide(self, chat_id: str) -> None:
        """Hide a chat from the user's list (soft removal)."""
        await self._api.delete(f"/chats/{chat_id}")

    async def mark_read(self, chat_id: str) -> None:
        """Zero the user's server-side unread counter for ``chat_id``.

        The server resets the counter whenever it serves a message page for
        the chat, so a one-message page is enough.
        """
        await self._api.get(f"/messages/{chat_id}", params={"page": 1, "limit": 1})


class MessageApi:
    """``/messages``: send and paginated history."""

    def __init__(self, api: ApiClient) -> None:
        self._api = api

    async def send(
        self,
        chat_id: str,
        content: str = "",
        kind: MessageKind = MessageKind.TEXT,
        post_id: Optional[str] = None,
        media_url: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> Message:
        """Persist a message; the server broadcasts ``new_message`` to the room."""
        payload: Dict[str, Any] = {
            "chatId": chat_id,
            "content": content,
            "type": kind.value,
            "postId": post_id,
            "mediaUrl": media_url,
        }
        if client_id:
            payload["clientId"] = client_id
        body = await self._api.post("/messages", json=payload)
        return Message.model_validate(body["data"])

    async def list_page(
        self, chat_id: str, page: int = 1, limit: int = DEFAULT_PAGE_SIZE
    ) -> List[Message]:
        """One page of history, oldest first. Page 1 is the most recent."""
        body = await self._api.get(
            f"/messages/{chat_id}", params={"page": page, "limit": limit}
        )
        return [Message.model_validate(m) for m in body.get("data") or []]


class NotificationApi:
    """``/notifications``: list, mark read, delete, clear."""

    def __init__(self, api: ApiClient) -> None:
        self._api = api

    async def list_notifications(self) -> List[Notification]:
        body = await self._api.get("/notifications")
        return [Notification.model_validate(n) for n in body.get("data") or []]

    async def mark_all_read(self) -> None:
        await self._api.patch("/notifications/mark-read")

    async def delete(self, notification_id: str) -> None:
        await self._api.delete(f"/notifications/{notification_id}")

    async def clear_all(self) -> None:
        await self._api.delete("/notifications/clear-all")


class PostApi:
    """``/posts``: like/save toggles and comments."""

    def __init__(self, api: ApiClient) -> None:
        self._api = api

    async def toggle_like(self, post_id: str) -> LikeResult:
        # Result fields sit at the top level of the envelope.
        body = await self._api.post(f"/posts/{post_id}/like")
        return LikeResult.model_validate(body)

    async def toggle_save(self, post_id: str) -> SaveResult:
        body = await self._api.post(f"/posts/{post_id}/save")
        return SaveResult.model_validate(body)

    async def list_comments(self, post_id: str) -> List[Comment]:
        body = await self._api.get(f"/posts/{post_id}/comments")
        return [Comment.model_validate(c) for c in body.get("data") or []]

    async def add_comment(
        self, post_id: str, text: str, parent_comment_id: Optional[str] = None
    ) -> Comment:
        body = await self._api.post(
            f"/posts/{post_id}/comments",
            json={"text": text, "parentCommentId": parent_comment_id},
        )
        return Comment.model_validate(body["data"])

    async def delete_comment(self, post_id: str, comment_id: str) -> None:
        await self._api.delete(f"/posts/{post_id}/comments/{comment_id}")


class UserApi:
    """``/users``: own profile, follow toggle and search."""

    def __init__(self, api: ApiClient) -> None:
        self._api = api

    async def get_profile(self) -> UserProfile:
        body = await self._api.get("/users/profile")
        return UserProfile.model_validate(body["data"])

    async def toggle_follow(self, user_id: str) -> FollowResult:
        body = await self._api.post(f"/users/toggle-follow/{user_id}")
        return FollowResult.model_validate(body)

    async def search(self, query: str) -> List[UserProfile]:
        if not query.strip():
            return []
        body = await self._api.get(f"/users/search/{quote(query.strip(), safe='')}")
        return [UserProfile.model_validate(u) for u in body.get("data") or []]


class PicstaApi:
    """All resource services over one shared :class:`ApiClient`."""

    def __init__(self, api: ApiClient) -> None:
        self.client = api
        self.chats = ChatApi(api)
        self.messages = MessageApi(api)
        self.notifications = NotificationApi(api)
        self.posts = PostApi(api)
        self.users = UserApi(api)

    async def close(self) -> None:
        await self.client.close()
