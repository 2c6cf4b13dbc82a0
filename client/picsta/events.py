"""Typed publish/subscribe bus for cross-component updates.

Components publish small dataclass events; subscribers register for an event
class (or a base class, to receive every subclass). Dispatch is synchronous
on the caller's event loop, in subscription order.

Usage:
    bus = EventBus()
    unsubscribe = bus.subscribe(PostUpdated, lambda e: print(e.post_id))
    bus.publish(PostUpdated(post_id="p1", liked=True, likes_count=3))
    unsubscribe()
"""
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Type, TypeVar

logger = logging.getLogger(__name__)


# =============================================================================
# Event types
# =============================================================================


@dataclass(frozen=True)
class Event:
    """Base class for all bus events."""


@dataclass(frozen=True)
class ConnectionStateChanged(Event):
    state: str
    previous: str


@dataclass(frozen=True)
class MessagesChanged(Event):
    """A conversation's message stream changed (insert, merge or removal)."""
    conversation_id: str


@dataclass(frozen=True)
class MessageStateChanged(Event):
    """An optimistic message moved through ``pending -> sent | failed``.

    Attributes:
        conversation_id: Conversation of the message.
        temp_id: Client temp id the send was started with.
        message_id: Current id (canonical once sent).
        state: New delivery state value.
        error: Send error for ``failed``.
    """
    conversation_id: str
    temp_id: str
    message_id: str
    state: str
    error: Optional[str] = None


@dataclass(frozen=True)
class UnreadChanged(Event):
    conversation_id: Optional[str]
    count: int
    total: int


@dataclass(frozen=True)
class NotificationsChanged(Event):
    unread: int
    total: int


@dataclass(frozen=True)
class ConversationsChanged(Event):
    """The conversation list was re-ordered, updated or filtered."""


@dataclass(frozen=True)
class PostUpdated(Event):
    post_id: str
    liked: Optional[bool] = None
    likes_count: Optional[int] = None
    saved: Optional[bool] = None


@dataclass(frozen=True)
class UserFollowUpdated(Event):
    user_id: str
    is_following: bool
    followers_count: Optional[int] = None


# =============================================================================
# Bus
# =============================================================================

E = TypeVar("E", bound=Event)


class EventBus:
    """In-process publish/subscribe dispatcher keyed by event class."""

    def __init__(self) -> None:
        self._handlers: Dict[Type[Event], List[Callable[[Event], None]]] = {}

    def subscribe(self, event_type: Type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        """Register ``handler`` for ``event_type`` and its subclasses.

        Returns:
            A callable that removes the subscription.
        """
        self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, event: Event) -> int:
        """Deliver ``event`` to every matching subscriber.

        A failing subscriber is logged and skipped; the remaining subscribers
        still run.

        Returns:
            Number of handlers invoked.
        """
        delivered = 0
        for event_type in type(event).__mro__:
            for handler in list(self._handlers.get(event_type, [])):
                delivered += 1
                try:
                    handler(event)
                except Exception:
                    logger.exception(
                        "[EventBus] handler %r failed for %s", handler, type(event).__name__
                    )
        return delivered

    def subscriber_count(self, event_type: Type[Event]) -> int:
        return len(self._handlers.get(event_type, []))
