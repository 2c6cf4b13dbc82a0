"""Picsta real-time client session.

Entry point that composes the client components into one session:

Modules:
    - connection: Socket.IO transport, reconnect backoff and room membership
    - messaging: stream reducer, delivery layer, unread counters, chat list
    - notifications: notification list and unread count
    - api: httpx REST client and typed services
    - events: typed event bus the components publish on

Usage:
    async with session_lifespan() as session:
        await session.open_conversation(chat_id)
        await session.send_message(chat_id, {"text": "hello"})
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, FrozenSet, List, Optional

from pydantic import ValidationError

from picsta.api.client import ApiClient
from picsta.api.errors import ApiError, TransportError
from picsta.api.services import PicstaApi
from picsta.config import PicstaConfig, get_config
from picsta.connection.manager import ConnectionManager
from picsta.events import Event, EventBus
from picsta.messaging.conversations import ConversationDirectory
from picsta.messaging.delivery import (
    DeliveryLayer,
    Payload,
    ToggleState,
    post_like_toggle,
    post_save_toggle,
    user_follow_toggle,
)
from picsta.messaging.poller import ReconciliationPoller
from picsta.messaging.reducer import StreamReducer
from picsta.messaging.schemas import Conversation, DeliveryState, Message
from picsta.messaging.unread import UnreadAggregator
from picsta.notifications.center import NotificationCenter

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that log every request, frame or ping at INFO.
NOISY_LOGGERS = (
    "httpx",
    "httpcore",
    "socketio",
    "socketio.client",
    "engineio",
    "engineio.client",
    "aiohttp",
)


def configure_logging(level: str = "info") -> None:
    """Configure root logging and silence chatty transport loggers."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    apply_log_level(level)
    for _noisy in NOISY_LOGGERS:
        logging.getLogger(_noisy).setLevel(logging.WARNING)


def apply_log_level(level: str) -> None:
    configured_level = getattr(logging, level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)


# =============================================================================
# Session
# =============================================================================


class RealtimeSession:
    """One signed-in user's real-time state.

    Wires the socket events and REST calls into the reducer, the chat list,
    the unread counters and the notification center, and keeps them in sync
    across reconnects and through the fallback poll.

    Args:
        config: Client configuration.
        api: REST services (built from ``config`` if omitted).
        connection: Connection manager (built from ``config`` if omitted).
        bus: Event bus shared by all components.
        client_factory: Socket client factory passed to the connection
            manager (tests inject a fake).
        sleep: Awaitable sleep for backoff and polling.
    """

    def __init__(
        self,
        config: PicstaConfig,
        api: Optional[PicstaApi] = None,
        connection: Optional[ConnectionManager] = None,
        bus: Optional[EventBus] = None,
        client_factory: Optional[Callable[[], Any]] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.bus = bus or EventBus()
        cookies = config.secrets.session.cookies()
        self.api = api or PicstaApi(ApiClient(
            config.server.api_base_url,
            cookies=cookies,
            timeout=config.server.request_timeout_seconds,
        ))
        self.connection = connection or ConnectionManager(
            config.server.socket_url,
            settings=config.connection,
            cookies=cookies,
            transports=config.server.transports,
            client_factory=client_factory,
            sleep=sleep,
            bus=self.bus,
        )

        self.reducer = StreamReducer(bus=self.bus)
        self.conversations = ConversationDirectory(bus=self.bus)
        self.unread = UnreadAggregator(self.api.chats.mark_read, bus=self.bus)
        self.delivery = DeliveryLayer(self.reducer, self.api.messages, bus=self.bus)
        self.notifications = NotificationCenter(self.api.notifications, bus=self.bus)
        self.likes = post_like_toggle(self.api.posts, self.bus)
        self.saves = post_save_toggle(self.api.posts, self.bus)
        self.follows = user_follow_toggle(self.api.users, self.bus)
        self.poller = ReconciliationPoller(
            config.sync.poll_interval_seconds, [self.reconcile], sleep=sleep
        )

        self.self_id: Optional[str] = None
        self._active: Optional[str] = None
        self._history_task: Optional[asyncio.Task] = None

        self.connection.on("new_message", self._on_new_message)
        self.connection.on("message_ack", self._on_message_ack)
        self.connection.on("messages_deleted", self._on_messages_deleted)
        self.connection.on("chat_updated", self._on_chat_updated)
        self.connection.add_reconnect_listener(self._on_reconnected)

    @property
    def active_conversation(self) -> Optional[str]:
        return self._active

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Identify the user, connect, load state and start polling.

        Raises:
            ApiError: If the own profile cannot be loaded (not signed in).
        """
        profile = await self.api.users.get_profile()
        self._set_self_id(profile.id)
        logger.info("[Session] signed in as %s (%s)", profile.username, profile.id)

        await self.connection.connect()
        try:
            await self.reconcile()
        except (ApiError, TransportError) as e:
            logger.warning("[Session] initial sync failed, poll will retry: %s", e)
        await self.poller.start()

    async def stop(self) -> None:
        await self.poller.stop()
        await self._cancel_history()
        await self.connection.disconnect()
        await self.api.close()
        logger.info("[Session] stopped")

    # -------------------------------------------------------------------------
    # Conversations
    # -------------------------------------------------------------------------

    async def open_conversation(self, conversation_id: str) -> asyncio.Task:
        """Show a conversation: join its room, zero unread, load history.

        Returns:
            The history fetch task (already scheduled).
        """
        if self._active and self._active != conversation_id:
            await self.close_conversation()
        await self._cancel_history()

        self._active = conversation_id
        self.connection.rooms.join_room(conversation_id)
        await self.unread.on_conversation_opened(conversation_id)
        self._history_task = asyncio.create_task(
            self.load_history(conversation_id, require_active=True)
        )
        return self._history_task

    async def close_conversation(self) -> None:
        """Leave the open conversation and mark what arrived meanwhile read."""
        conversation_id, self._active = self._active, None
        await self._cancel_history()
        await self.unread.on_conversation_closed()
        if conversation_id:
            self.connection.rooms.leave_room(conversation_id)
            self.reducer.evict(conversation_id)

    async def load_history(
        self, conversation_id: str, page: int = 1, require_active: bool = False
    ) -> int:
        """Fetch one history page and merge it into the stream.

        A page that arrives after its conversation was closed is dropped.

        Returns:
            Number of entries merged.
        """
        try:
            messages = await self.api.messages.list_page(
                conversation_id, page=page, limit=self.config.sync.history_page_size
            )
        except (ApiError, TransportError) as e:
            logger.warning("[Session] history page %d of %s failed: %s", page, conversation_id, e)
            return 0

        if require_active and conversation_id != self._active:
            logger.debug("[Session] dropping late page for %s", conversation_id)
            return 0
        if not require_active and conversation_id not in self.connection.rooms:
            logger.debug("[Session] dropping page for left room %s", conversation_id)
            return 0
        return self.reducer.apply_history_page(conversation_id, messages)

    async def start_chat(self, user_id: str) -> Conversation:
        conversation = await self.api.chats.create_or_get(user_id)
        self.conversations.upsert(conversation)
        return conversation

    async def hide_conversation(self, conversation_id: str) -> bool:
        """Hide a conversation; restored locally if the server refuses."""
        previous = self.conversations.hide(conversation_id)
        try:
            await self.api.chats.hide(conversation_id)
        except (ApiError, TransportError) as e:
            logger.warning("[Session] hide %s failed: %s", conversation_id, e)
            if previous is not None:
                self.conversations.restore(previous)
            return False
        self.unread.forget(conversation_id)
        if self._active == conversation_id:
            await self.close_conversation()
        else:
            self.reducer.evict(conversation_id)
        return True

    # -------------------------------------------------------------------------
    # Messages and toggles
    # -------------------------------------------------------------------------

    async def send_message(self, conversation_id: str, payload: Payload) -> Message:
        message = await self.delivery.send(conversation_id, payload)
        if message.state == DeliveryState.SENT:
            self.conversations.on_message(message)
        return message

    async def retry_message(self, temp_id: str) -> Message:
        message = await self.delivery.retry(temp_id)
        if message.state == DeliveryState.SENT:
            self.conversations.on_message(message)
        return message

    def messages(self, conversation_id: str) -> List[Message]:
        return self.reducer.messages(conversation_id)

    async def toggle_like(self, post_id: str) -> ToggleState:
        return await self.likes.toggle(post_id)

    async def toggle_save(self, post_id: str) -> ToggleState:
        return await self.saves.toggle(post_id)

    async def toggle_follow(self, user_id: str) -> ToggleState:
        return await self.follows.toggle(user_id)

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    async def reconcile(self) -> None:
        """Overwrite local lists and counters with the server's view."""
        await self.unread.flush_pending()
        conversations = await self.api.chats.list_chats()
        self.conversations.load(conversations)
        self.unread.set_counts({c.id: c.unread_for(self.self_id or "") for c in conversations})
        await self.notifications.refresh()

    async def _on_reconnected(self, joined: FrozenSet[str]) -> None:
        for conversation_id in sorted(joined):
            await self.load_history(conversation_id)
        await self.reconcile()

    # -------------------------------------------------------------------------
    # Socket handlers
    # -------------------------------------------------------------------------

    async def _on_new_message(self, data: Dict[str, Any]) -> None:
        try:
            message = Message.model_validate(data)
        except ValidationError as e:
            logger.warning("[Session] ignoring malformed new_message: %s", e)
            return
        if not self.reducer.apply_incoming(message):
            return
        if not self.conversations.on_message(message):
            try:
                self.conversations.load(await self.api.chats.list_chats())
            except (ApiError, TransportError) as e:
                logger.warning("[Session] chat list refresh failed: %s", e)
        if message.sender_id != self.self_id:
            self.unread.on_message_arrived(message.conversation_id)

    def _on_message_ack(self, data: Dict[str, Any]) -> None:
        try:
            self.delivery.handle_ack(data)
        except ValidationError as e:
            logger.warning("[Session] ignoring malformed message_ack: %s", e)

    def _on_messages_deleted(self, data: Dict[str, Any]) -> None:
        conversation_id = data.get("chatId")
        if not conversation_id:
            return
        message_ids = data.get("messageIds")
        if message_ids is None:
            self.reducer.clear(conversation_id)
        else:
            self.reducer.remove_messages(conversation_id, message_ids)

    def _on_chat_updated(self, data: Dict[str, Any]) -> None:
        try:
            self.conversations.upsert(Conversation.model_validate(data))
        except ValidationError as e:
            logger.warning("[Session] ignoring malformed chat_updated: %s", e)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _set_self_id(self, user_id: str) -> None:
        self.self_id = user_id
        self.reducer.self_id = user_id
        self.conversations.self_id = user_id

    async def _cancel_history(self) -> None:
        task, self._history_task = self._history_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


@asynccontextmanager
async def session_lifespan(
    config: Optional[PicstaConfig] = None, **kwargs: Any
) -> AsyncIterator[RealtimeSession]:
    """Start a session on enter and stop it on exit."""
    config = config or get_config()
    apply_log_level(config.logging.level)
    session = RealtimeSession(config, **kwargs)
    await session.start()
    try:
        yield session
    finally:
        await session.stop()


async def run() -> None:
    """Connect with the configured session and log activity until cancelled."""
    config = get_config()
    configure_logging(config.logging.level)
    async with session_lifespan(config) as session:
        session.bus.subscribe(Event, lambda event: logger.info("[Session] %s", event))
        await asyncio.Event().wait()


if __name__ == "__main__":
    asyncio.run(run())
