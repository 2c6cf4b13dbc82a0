"""Socket.IO connection lifecycle for one Picsta session.

This module owns the single real-time transport of a session:
    - connect / disconnect with the session cookies sent at handshake
    - automatic reconnect with exponential backoff and jitter
    - replay of room joins and reconnect listeners once back online
    - dispatch of server events to registered handlers

The Engine.IO ping/pong that python-socketio runs underneath is the
heartbeat. A missed pong closes the transport, which arrives here as a
``disconnect`` event and enters the reconnect loop.

Thread Safety:
    All methods run on the session's asyncio event loop. The manager is the
    only writer of ``state``.
"""
import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Set, Union

import socketio
from socketio.exceptions import ConnectionError as SocketConnectionError

from picsta.config import ConnectionSettings
from picsta.events import ConnectionStateChanged, EventBus

from .backoff import Backoff
from .rooms import RoomMembership

logger = logging.getLogger(__name__)

# =============================================================================
# Types
# =============================================================================


class ConnectionState(str, Enum):
    """Lifecycle of the real-time transport.

    Attributes:
        DISCONNECTED: No transport and no reconnect loop (initial/closed).
        CONNECTING: First connection attempt in progress.
        CONNECTED: Transport up; events flow.
        RECONNECTING: Transport lost; the backoff loop is running.
    """
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


EventHandler = Callable[..., Union[None, Awaitable[None]]]
ReconnectListener = Callable[[FrozenSet[str]], Union[None, Awaitable[None]]]

DEFAULT_TRANSPORTS = ["websocket", "polling"]


def default_client_factory() -> socketio.AsyncClient:
    """Socket.IO client with its built-in reconnection disabled.

    Reconnection is driven by :class:`ConnectionManager` so that room joins
    and reconnect listeners run after every successful attempt.
    """
    return socketio.AsyncClient(reconnection=False, logger=False, engineio_logger=False)


# =============================================================================
# Connection manager
# =============================================================================


class ConnectionManager:
    """Owns one Socket.IO transport and keeps it alive while the session is open.

    Args:
        url: Socket.IO server URL.
        settings: Backoff and timeout settings.
        cookies: Session cookies, sent as a ``Cookie`` header at handshake.
        transports: Engine.IO transports to try, in order.
        client_factory: Builds a fresh socket client per attempt (tests
            inject a fake here).
        sleep: Awaitable sleep used between attempts.
        bus: Optional event bus for ``ConnectionStateChanged``.
    """

    def __init__(
        self,
        url: str,
        settings: Optional[ConnectionSettings] = None,
        cookies: Optional[Dict[str, str]] = None,
        transports: Optional[List[str]] = None,
        client_factory: Optional[Callable[[], Any]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.url = url
        self._settings = settings or ConnectionSettings()
        self._cookies = dict(cookies or {})
        self._transports = list(transports or DEFAULT_TRANSPORTS)
        self._client_factory = client_factory or default_client_factory
        self._sleep = sleep
        self._bus = bus

        self.backoff = Backoff(
            initial=self._settings.backoff_initial_seconds,
            maximum=self._settings.backoff_max_seconds,
            multiplier=self._settings.backoff_multiplier,
            jitter=self._settings.backoff_jitter,
        )
        self.rooms = RoomMembership(self.emit)

        self._state = ConnectionState.DISCONNECTED
        self._client: Optional[Any] = None
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._reconnect_listeners: List[ReconnectListener] = []
        self._reconnect_task: Optional[asyncio.Task] = None
        self._emit_tasks: Set[asyncio.Task] = set()
        self._closing = False
        self._has_connected = False

    # -------------------------------------------------------------------------
    # Read access
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the transport. No-op unless currently disconnected.

        Never raises: a failed first attempt starts the reconnect loop.
        """
        if self._state != ConnectionState.DISCONNECTED:
            return
        self._closing = False
        self._set_state(ConnectionState.CONNECTING)
        if not await self._attempt():
            self._schedule_reconnect()

    async def disconnect(self) -> None:
        """Close the transport, stop reconnecting and forget joined rooms."""
        self._closing = True
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._discard_client()
        self.rooms.clear()
        self.backoff.reset()
        self._has_connected = False
        self._set_state(ConnectionState.DISCONNECTED)

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def on(self, event: str, handler: EventHandler) -> None:
        """Register a handler (sync or async) for a server event."""
        first = event not in self._handlers
        self._handlers.setdefault(event, []).append(handler)
        if first and self._client is not None:
            self._client.on(event, self._dispatcher(event))

    def add_reconnect_listener(self, listener: ReconnectListener) -> None:
        """Call ``listener(joined_rooms)`` after every successful reconnect."""
        self._reconnect_listeners.append(listener)

    def emit(self, event: str, data: Any = None) -> bool:
        """Send a frame if the transport is up.

        Returns:
            False while not connected (nothing is queued).
        """
        client = self._client
        if self._state != ConnectionState.CONNECTED or client is None:
            return False
        task = asyncio.create_task(client.emit(event, data))
        self._emit_tasks.add(task)
        task.add_done_callback(self._emit_done)
        return True

    # -------------------------------------------------------------------------
    # Internal: attempts and reconnect loop
    # -------------------------------------------------------------------------

    async def _attempt(self) -> bool:
        await self._discard_client()
        client = self._client_factory()
        self._register(client)
        self._client = client
        timeout = self._settings.connect_timeout_seconds
        try:
            await asyncio.wait_for(
                client.connect(
                    self.url,
                    headers=self._headers(),
                    transports=self._transports,
                    wait_timeout=timeout,
                ),
                timeout=timeout,
            )
        except (SocketConnectionError, asyncio.TimeoutError, OSError) as e:
            logger.warning("[Connection] connect to %s failed: %s", self.url, e)
            if self._client is client:
                self._client = None
            return False

        if self._closing or self._client is not client:
            return False
        self.backoff.reset()
        self._has_connected = True
        self._set_state(ConnectionState.CONNECTED)
        self.rooms.rejoin_all()
        return True

    def _schedule_reconnect(self) -> None:
        if self._closing:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        while not self._closing:
            delay = self.backoff.next_delay()
            logger.info(
                "[Connection] reconnect attempt %d in %.2fs", self.backoff.attempts, delay
            )
            await self._sleep(delay)
            if self._closing:
                return
            was_connected = self._has_connected
            if await self._attempt():
                # Released before listeners run so a drop during them reschedules.
                self._reconnect_task = None
                if was_connected:
                    await self._notify_reconnected()
                return

    async def _notify_reconnected(self) -> None:
        joined = self.rooms.joined
        logger.info("[Connection] reconnected, %d room(s) joined", len(joined))
        for listener in list(self._reconnect_listeners):
            try:
                result = listener(joined)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("[Connection] reconnect listener failed")

    async def _discard_client(self) -> None:
        client, self._client = self._client, None
        if client is None or not getattr(client, "connected", False):
            return
        try:
            await client.disconnect()
        except Exception as e:
            logger.debug("[Connection] error closing old transport: %s", e)

    # -------------------------------------------------------------------------
    # Internal: socket callbacks
    # -------------------------------------------------------------------------

    def _register(self, client: Any) -> None:
        async def on_connect() -> None:
            logger.debug("[Connection] transport connected (%s)", self.url)

        async def on_disconnect(*args: Any) -> None:
            await self._handle_disconnect(client, *args)

        client.on("connect", on_connect)
        client.on("disconnect", on_disconnect)
        for event in self._handlers:
            client.on(event, self._dispatcher(event))

    async def _handle_disconnect(self, client: Any, *args: Any) -> None:
        if client is not self._client or self._closing:
            return
        reason = args[0] if args else "transport closed"
        logger.warning("[Connection] lost connection to %s (%s)", self.url, reason)
        self._client = None
        self._schedule_reconnect()

    def _dispatcher(self, event: str) -> Callable[..., Awaitable[None]]:
        async def dispatch(*args: Any) -> None:
            await self._dispatch(event, *args)
        return dispatch

    async def _dispatch(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("[Connection] handler for '%s' failed", event)

    def _emit_done(self, task: asyncio.Task) -> None:
        self._emit_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("[Connection] emit failed: %s", error)

    def _headers(self) -> Dict[str, str]:
        if not self._cookies:
            return {}
        return {"Cookie": "; ".join(f"{k}={v}" for k, v in self._cookies.items())}

    def _set_state(self, state: ConnectionState) -> None:
        previous = self._state
        if previous == state:
            return
        self._state = state
        logger.info("[Connection] %s -> %s", previous.value, state.value)
        if self._bus is not None:
            self._bus.publish(ConnectionStateChanged(state=state.value, previous=previous.value))
