"""Delivery guarantees for outgoing messages and optimistic toggles.

Every send is shown immediately as a ``pending`` entry and then moves to
``sent`` (reconciled to its canonical id) or ``failed``. Failed sends stay in
an outbox until :meth:`DeliveryLayer.retry` succeeds; nothing is dropped
silently.

    pending ──ok──► sent
       │  ▲
    error  retry
       ▼  │
      failed

The same flip-now/confirm-later mechanism backs likes, saves and follows
(:class:`OptimisticToggle`): the flipped state is published at once, replaced
by the server's answer on success and rolled back on failure.
"""
import logging
import uuid
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from pydantic import ValidationError

from picsta.api.errors import ApiError, TransportError, UnknownMessageError
from picsta.api.schemas import FollowResult, LikeResult, SaveResult
from picsta.api.services import MessageApi, PostApi, UserApi
from picsta.events import EventBus, Event, MessageStateChanged, PostUpdated, UserFollowUpdated

from .reducer import StreamReducer, new_temp_message
from .schemas import DeliveryState, Message, MessageKind, OutgoingMessage

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "temp-"

Payload = Union[OutgoingMessage, Dict[str, Any], str]


def new_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


def coerce_payload(payload: Payload) -> OutgoingMessage:
    """Accept ``"hi"``, ``{"text": "hi"}`` or an :class:`OutgoingMessage`.

    Raises:
        ValueError: If the payload carries no content.
    """
    if isinstance(payload, OutgoingMessage):
        return payload
    if isinstance(payload, str):
        return OutgoingMessage(content=payload)
    data = dict(payload)
    return OutgoingMessage(
        kind=data.get("kind") or data.get("type") or MessageKind.TEXT,
        content=data.get("text") or data.get("content") or "",
        post_id=data.get("post_id") or data.get("postId"),
        media_url=data.get("media_url") or data.get("mediaUrl"),
    )


# =============================================================================
# Messages
# =============================================================================


@dataclass
class OutboxEntry:
    """An unconfirmed send, kept until the server accepts it."""
    temp_id: str
    conversation_id: str
    payload: OutgoingMessage
    attempts: int = 0
    last_error: Optional[str] = None


class DeliveryLayer:
    """Optimistic sending with reconciliation, failure state and retry.

    Args:
        reducer: Stream reducer that displays the optimistic entries.
        messages: REST service used to persist messages.
        bus: Optional event bus for ``MessageStateChanged``.
    """

    def __init__(
        self,
        reducer: StreamReducer,
        messages: MessageApi,
        bus: Optional[EventBus] = None,
    ) -> None:
        self._reducer = reducer
        self._messages = messages
        self._bus = bus
        self._outbox: Dict[str, OutboxEntry] = {}
        self._in_flight: Set[str] = set()

    @property
    def outbox(self) -> List[OutboxEntry]:
        return list(self._outbox.values())

    def failed(self, conversation_id: Optional[str] = None) -> List[Message]:
        """Failed entries awaiting retry, in submission order."""
        result = []
        for entry in self._outbox.values():
            if conversation_id is not None and entry.conversation_id != conversation_id:
                continue
            current = self._reducer.resolve(entry.temp_id)
            if current is not None and current.state == DeliveryState.FAILED:
                result.append(current)
        return result

    async def send(self, conversation_id: str, payload: Payload) -> Message:
        """Show the message as pending at once, then persist it.

        Returns:
            The entry after the attempt: ``sent`` with its canonical id, or
            ``failed`` with the error recorded.
        """
        outgoing = coerce_payload(payload)
        temp_id = new_temp_id()
        entry = OutboxEntry(temp_id=temp_id, conversation_id=conversation_id, payload=outgoing)
        self._outbox[temp_id] = entry

        temp = new_temp_message(
            conversation_id,
            self._reducer.self_id or "",
            temp_id,
            kind=outgoing.kind,
            content=outgoing.content,
            post_id=outgoing.post_id,
            media_url=outgoing.media_url or "",
        )
        self._reducer.apply_optimistic(temp)
        self._publish_state(entry, temp_id, DeliveryState.PENDING)
        return await self._deliver(entry)

    async def retry(self, temp_id: str) -> Message:
        """Re-send a failed message under its original temp id.

        Raises:
            UnknownMessageError: If ``temp_id`` is not in the outbox.
        """
        entry = self._outbox.get(temp_id)
        if entry is None:
            raise UnknownMessageError(temp_id)

        current = self._reducer.resolve(temp_id)
        if current is None:
            # Conversation was cleared under us.
            del self._outbox[temp_id]
            raise UnknownMessageError(temp_id)
        if current.state == DeliveryState.SENT:
            # A broadcast confirmed it while it was marked failed.
            del self._outbox[temp_id]
            return current
        if temp_id in self._in_flight:
            return current

        self._reducer.mark_pending(temp_id)
        self._publish_state(entry, temp_id, DeliveryState.PENDING)
        return await self._deliver(entry)

    def handle_ack(self, data: Dict[str, Any]) -> Optional[Message]:
        """Apply a ``message_ack`` event: ``{clientId, message}``."""
        temp_id = data.get("clientId")
        if not temp_id or not data.get("message"):
            return None
        canonical = Message.model_validate(data["message"])
        confirmed = self._reducer.reconcile(temp_id, canonical)
        entry = self._outbox.pop(temp_id, None)
        if confirmed is not None and entry is not None:
            self._publish_state(entry, confirmed.id, DeliveryState.SENT)
        return confirmed

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    async def _deliver(self, entry: OutboxEntry) -> Message:
        temp_id = entry.temp_id
        entry.attempts += 1
        self._in_flight.add(temp_id)
        try:
            canonical = await self._messages.send(
                entry.conversation_id,
                content=entry.payload.content,
                kind=entry.payload.kind,
                post_id=entry.payload.post_id,
                media_url=entry.payload.media_url,
                client_id=temp_id,
            )
        except (ApiError, TransportError) as e:
            return self._fail(entry, e.message)
        except ValidationError as e:
            return self._fail(entry, f"unreadable server response: {e.error_count()} error(s)")
        finally:
            self._in_flight.discard(temp_id)

        self._outbox.pop(temp_id, None)
        confirmed = self._reducer.reconcile(temp_id, canonical) or canonical
        logger.debug("[Delivery] %s confirmed as %s", temp_id, confirmed.id)
        self._publish_state(entry, confirmed.id, DeliveryState.SENT)
        return confirmed

    def _fail(self, entry: OutboxEntry, error: str) -> Message:
        temp_id = entry.temp_id
        entry.last_error = error
        current = self._reducer.resolve(temp_id)
        if current is not None and current.state == DeliveryState.SENT:
            self._outbox.pop(temp_id, None)
            return current

        logger.warning(
            "[Delivery] send %s to %s failed (attempt %d): %s",
            temp_id, entry.conversation_id, entry.attempts, error,
        )
        failed = self._reducer.mark_failed(temp_id, error)
        self._publish_state(entry, temp_id, DeliveryState.FAILED, error)
        if failed is not None:
            return failed
        return new_temp_message(
            entry.conversation_id, self._reducer.self_id or "", temp_id,
            content=entry.payload.content, state=DeliveryState.FAILED, error=error,
        )

    def _publish_state(
        self,
        entry: OutboxEntry,
        message_id: str,
        state: DeliveryState,
        error: Optional[str] = None,
    ) -> None:
        if self._bus is None:
            return
        self._bus.publish(MessageStateChanged(
            conversation_id=entry.conversation_id,
            temp_id=entry.temp_id,
            message_id=message_id,
            state=state.value,
            error=error,
        ))


# =============================================================================
# Toggles (likes, saves, follows)
# =============================================================================


@dataclass(frozen=True)
class ToggleState:
    """Displayed state of a toggle.

    Attributes:
        active: Liked / saved / following.
        count: Associated counter (likes, followers) if the toggle has one.
        error: Error of the last failed toggle, cleared on success.
    """
    active: bool
    count: Optional[int] = None
    error: Optional[str] = None

    def flipped(self) -> "ToggleState":
        count = self.count
        if count is not None:
            count = max(count + (-1 if self.active else 1), 0)
        return ToggleState(active=not self.active, count=count)


class OptimisticToggle:
    """Flip a boolean immediately, then confirm or roll back.

    Args:
        name: Label for logs (``like``, ``save``, ``follow``).
        call: Coroutine performing the server toggle for a key.
        read: Maps the server result (and the optimistic state) to the
            confirmed state.
        make_event: Builds the bus event announcing a key's state.
        bus: Optional event bus.
    """

    def __init__(
        self,
        name: str,
        call: Callable[[str], Awaitable[Any]],
        read: Callable[[Any, ToggleState], ToggleState],
        make_event: Callable[[str, ToggleState], Event],
        bus: Optional[EventBus] = None,
    ) -> None:
        self.name = name
        self._call = call
        self._read = read
        self._make_event = make_event
        self._bus = bus
        self._states: Dict[str, ToggleState] = {}
        self._in_flight: Set[str] = set()

    def seed(self, key: str, active: bool, count: Optional[int] = None) -> None:
        """Record the server-rendered state before the first toggle."""
        self._states[key] = ToggleState(active=active, count=count)

    def state(self, key: str) -> ToggleState:
        return self._states.get(key, ToggleState(active=False))

    def is_busy(self, key: str) -> bool:
        return key in self._in_flight

    async def toggle(self, key: str) -> ToggleState:
        """Flip ``key``. A toggle already in flight for ``key`` is not repeated."""
        if key in self._in_flight:
            return self.state(key)

        before = self.state(key)
        self._apply(key, before.flipped())
        self._in_flight.add(key)
        try:
            result = await self._call(key)
        except (ApiError, TransportError) as e:
            logger.warning("[Toggle] %s %s failed, rolling back: %s", self.name, key, e.message)
            return self._apply(key, replace(before, error=e.message))
        finally:
            self._in_flight.discard(key)
        return self._apply(key, self._read(result, self.state(key)))

    def _apply(self, key: str, state: ToggleState) -> ToggleState:
        self._states[key] = state
        if self._bus is not None:
            self._bus.publish(self._make_event(key, state))
        return state


def post_like_toggle(posts: PostApi, bus: Optional[EventBus] = None) -> OptimisticToggle:
    def read(result: LikeResult, optimistic: ToggleState) -> ToggleState:
        return ToggleState(active=result.is_liked, count=result.likes_count)

    return OptimisticToggle(
        "like",
        posts.toggle_like,
        read,
        lambda key, s: PostUpdated(post_id=key, liked=s.active, likes_count=s.count),
        bus,
    )


def post_save_toggle(posts: PostApi, bus: Optional[EventBus] = None) -> OptimisticToggle:
    def read(result: SaveResult, optimistic: ToggleState) -> ToggleState:
        return ToggleState(active=result.is_saved)

    return OptimisticToggle(
        "save",
        posts.toggle_save,
        read,
        lambda key, s: PostUpdated(post_id=key, saved=s.active),
        bus,
    )


def user_follow_toggle(users: UserApi, bus: Optional[EventBus] = None) -> OptimisticToggle:
    def read(result: FollowResult, optimistic: ToggleState) -> ToggleState:
        return ToggleState(active=result.is_following, count=result.followers_count)

    return OptimisticToggle(
        "follow",
        users.toggle_follow,
        read,
        lambda key, s: UserFollowUpdated(
            user_id=key, is_following=s.active, followers_count=s.count
        ),
        bus,
    )
