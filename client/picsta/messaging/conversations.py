"""Local directory of the user's conversations.

Keeps the chat list ordered by most recent activity and applies real-time
updates (``new_message``, ``chat_updated``) without a refetch. Hiding is a
soft, per-user removal: a hidden conversation reappears when a new message
arrives in it.
"""
import logging
from typing import Dict, Iterable, List, Optional

from picsta.events import ConversationsChanged, EventBus

from .schemas import Conversation, Message

logger = logging.getLogger(__name__)


class ConversationDirectory:
    """Conversations keyed by id, listed newest activity first.

    Args:
        self_id: Signed-in user's id (owner of ``hidden_by`` entries).
        bus: Optional event bus for ``ConversationsChanged``.
    """

    def __init__(self, self_id: Optional[str] = None, bus: Optional[EventBus] = None) -> None:
        self.self_id = self_id
        self._bus = bus
        self._conversations: Dict[str, Conversation] = {}

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._conversations

    def __len__(self) -> int:
        return len(self._conversations)

    def get(self, conversation_id: str) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    def visible(self) -> List[Conversation]:
        """Conversations not hidden by the user, most recently updated first."""
        items = [c for c in self._conversations.values() if not self._is_hidden(c)]
        return sorted(items, key=lambda c: (c.updated_at, c.id), reverse=True)

    def load(self, conversations: Iterable[Conversation]) -> None:
        """Replace the directory with a fresh ``GET /chats`` result."""
        self._conversations = {c.id: c for c in conversations}
        logger.debug("[Conversations] loaded %d conversation(s)", len(self._conversations))
        self._changed()

    def upsert(self, conversation: Conversation) -> None:
        """Apply a ``chat_updated`` payload.

        A payload that only references the last message by id keeps the
        populated last message already held locally.
        """
        existing = self._conversations.get(conversation.id)
        if (existing is not None
                and conversation.last_message is None
                and existing.last_message is not None
                and conversation.last_message_id == existing.last_message.id):
            conversation = conversation.model_copy(update={"last_message": existing.last_message})
        self._conversations[conversation.id] = conversation
        self._changed()

    def on_message(self, message: Message) -> bool:
        """Move the message's conversation to the top and un-hide it.

        Returns:
            False if the conversation is unknown (the caller should refetch
            the list).
        """
        existing = self._conversations.get(message.conversation_id)
        if existing is None:
            return False
        current = existing.last_message
        if current is not None and current.created_at > message.created_at:
            return True
        self._conversations[existing.id] = existing.model_copy(update={
            "last_message": message,
            "last_message_id": message.id,
            "updated_at": max(existing.updated_at, message.created_at),
            "hidden_by": [u for u in existing.hidden_by if u != self.self_id],
        })
        self._changed()
        return True

    def hide(self, conversation_id: str) -> Optional[Conversation]:
        """Hide a conversation for the user. Returns the previous entry."""
        existing = self._conversations.get(conversation_id)
        if existing is None or not self.self_id:
            return existing
        if self.self_id not in existing.hidden_by:
            self._conversations[conversation_id] = existing.model_copy(
                update={"hidden_by": existing.hidden_by + [self.self_id]}
            )
            self._changed()
        return existing

    def restore(self, conversation: Conversation) -> None:
        """Put back an entry returned by :meth:`hide` (failed hide call)."""
        self._conversations[conversation.id] = conversation
        self._changed()

    def remove(self, conversation_id: str) -> None:
        if self._conversations.pop(conversation_id, None) is not None:
            self._changed()

    def _is_hidden(self, conversation: Conversation) -> bool:
        return bool(self.self_id) and self.self_id in conversation.hidden_by

    def _changed(self) -> None:
        if self._bus is not None:
            self._bus.publish(ConversationsChanged())
