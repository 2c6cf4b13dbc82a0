"""Shared test fixtures for the Picsta client tests.

- ``stub`` / ``stub_app``: an in-memory FastAPI stand-in for the Picsta REST
  API, mounted into httpx through ``ASGITransport``.
- ``api``: :class:`PicstaApi` wired to the stub.
- ``socket_factory``: scripted fake Socket.IO clients, injected into the
  connection manager through its client factory.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from socketio.exceptions import ConnectionError as SocketConnectionError

from picsta.api.client import ApiClient
from picsta.api.services import PicstaApi
from picsta.config import ConnectionSettings, PicstaConfig, set_config

SELF_ID = "u1"
BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Fake Socket.IO client
# =============================================================================


class FakeSocketClient:
    """Records frames and lets a test play the server's side."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.handlers: Dict[str, Any] = {}
        self.connected = False
        self.emitted: List[Tuple[str, Any]] = []
        self.connect_kwargs: Dict[str, Any] = {}

    def on(self, event: str, handler: Any = None) -> None:
        self.handlers[event] = handler

    async def connect(self, url: str, **kwargs: Any) -> None:
        self.connect_kwargs = dict(kwargs, url=url)
        if self.fail:
            raise SocketConnectionError("Connection refused by the server")
        self.connected = True
        if "connect" in self.handlers:
            await self.handlers["connect"]()

    async def emit(self, event: str, data: Any = None) -> None:
        self.emitted.append((event, data))

    async def disconnect(self) -> None:
        self.connected = False

    # -- server side --------------------------------------------------------

    async def drop(self, reason: str = "transport close") -> None:
        """Simulate a lost transport (e.g. a missed heartbeat)."""
        self.connected = False
        await self.handlers["disconnect"](reason)

    async def server_emit(self, event: str, *args: Any) -> None:
        await self.handlers[event](*args)


class FakeSocketFactory:
    """Client factory; the next ``failures`` clients refuse to connect."""

    def __init__(self) -> None:
        self.clients: List[FakeSocketClient] = []
        self.failures = 0

    def __call__(self) -> FakeSocketClient:
        client = FakeSocketClient(fail=self.failures > 0)
        if self.failures:
            self.failures -= 1
        self.clients.append(client)
        return client

    @property
    def latest(self) -> FakeSocketClient:
        return self.clients[-1]

    def emitted(self, event: str) -> List[Any]:
        return [data for c in self.clients for (name, data) in c.emitted if name == event]

    @staticmethod
    async def settle() -> None:
        """Let scheduled emits and tasks run."""
        for _ in range(5):
            await asyncio.sleep(0)


@pytest.fixture
def socket_factory() -> FakeSocketFactory:
    return FakeSocketFactory()


@pytest.fixture
def no_sleep():
    """Sleep replacement that records requested delays and returns at once."""
    delays: List[float] = []

    async def sleep(delay: float) -> None:
        delays.append(delay)
        await asyncio.sleep(0)

    sleep.delays = delays
    return sleep


@pytest.fixture
def fast_settings() -> ConnectionSettings:
    return ConnectionSettings(
        backoff_initial_seconds=1.0,
        backoff_max_seconds=8.0,
        backoff_multiplier=2.0,
        backoff_jitter=0.0,
        connect_timeout_seconds=1.0,
    )


# =============================================================================
# Stub Picsta REST API
# =============================================================================


def message_doc(
    message_id: str,
    chat_id: str,
    sender: str,
    content: str,
    seconds: int,
    client_id: Optional[str] = None,
) -> Dict[str, Any]:
    doc = {
        "_id": message_id,
        "chat": chat_id,
        "sender": {"_id": sender, "username": sender, "name": sender.upper()},
        "type": "text",
        "content": content,
        "createdAt": (BASE_TIME + timedelta(seconds=seconds)).isoformat(),
    }
    if client_id:
        doc["clientId"] = client_id
    return doc


class StubPicsta:
    """In-memory server state behind the stub app."""

    def __init__(self) -> None:
        self.self_id = SELF_ID
        self.chats: Dict[str, Dict[str, Any]] = {}
        self.messages: Dict[str, List[Dict[str, Any]]] = {}
        self.notifications: List[Dict[str, Any]] = []
        self.likes: Dict[str, set] = {}
        self.saves: Dict[str, set] = {}
        self.following: set = set()
        self.comments: Dict[str, List[Dict[str, Any]]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.fail_sends = 0
        self.fail_paths: Dict[str, int] = {}
        self._seq = 0
        self._clock = 100

    def next_id(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}{self._seq}"

    def tick(self) -> int:
        self._clock += 1
        return self._clock

    def add_chat(self, chat_id: str, other: str = "u2", unread: int = 0) -> Dict[str, Any]:
        chat = {
            "_id": chat_id,
            "participants": [
                {"_id": self.self_id, "username": "alice"},
                {"_id": other, "username": other},
            ],
            "unreadCounts": [{"user": self.self_id, "count": unread}],
            "hiddenBy": [],
            "updatedAt": (BASE_TIME + timedelta(seconds=self.tick())).isoformat(),
        }
        self.chats[chat_id] = chat
        self.messages.setdefault(chat_id, [])
        return chat

    def add_message(self, chat_id: str, sender: str, content: str) -> Dict[str, Any]:
        doc = message_doc(self.next_id("m"), chat_id, sender, content, self.tick())
        self.messages.setdefault(chat_id, []).append(doc)
        return doc

    def add_notification(self, kind: str, days_ago: float, is_read: bool = False) -> Dict[str, Any]:
        doc = {
            "_id": self.next_id("n"),
            "recipient": self.self_id,
            "sender": {"_id": "u2", "username": "bob"},
            "type": kind,
            "isRead": is_read,
            "createdAt": (datetime.now(timezone.utc) - timedelta(days=days_ago)).isoformat(),
        }
        self.notifications.append(doc)
        return doc

    def set_unread(self, chat_id: str, count: int) -> None:
        self.chats[chat_id]["unreadCounts"] = [{"user": self.self_id, "count": count}]

    def calls_to(self, method: str, prefix: str) -> List[str]:
        return [p for (m, p) in self.calls if m == method and p.startswith(prefix)]


def ok(data: Any = None, **extra: Any) -> Dict[str, Any]:
    body = {"success": True, "data": data}
    body.update(extra)
    return body


def fail(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"success": False, "message": message})


def build_stub_app(state: StubPicsta) -> FastAPI:
    app = FastAPI()

    @app.middleware("http")
    async def record(request: Request, call_next):
        path = request.url.path[len("/api"):]
        state.calls.append((request.method, path))
        for prefix, remaining in list(state.fail_paths.items()):
            if remaining and path.startswith(prefix):
                state.fail_paths[prefix] = remaining - 1
                return fail(503, "Service unavailable")
        return await call_next(request)

    # -- users --------------------------------------------------------------

    @app.get("/api/users/profile")
    async def profile():
        return ok({
            "id": state.self_id, "username": "alice", "name": "Alice",
            "bio": None, "followersCount": 3, "followingCount": len(state.following),
        })

    @app.post("/api/users/toggle-follow/{user_id}")
    async def toggle_follow(user_id: str):
        if user_id == state.self_id:
            return fail(400, "You cannot follow yourself")
        if user_id in state.following:
            state.following.discard(user_id)
        else:
            state.following.add(user_id)
        following = user_id in state.following
        return {
            "success": True,
            "isFollowing": following,
            "followersCount": 10 + int(following),
            "followingCount": len(state.following),
        }

    @app.get("/api/users/search/{query}")
    async def search(query: str):
        users = [{"_id": "u2", "username": "bob"}, {"_id": "u3", "username": "bobby"}]
        return ok([u for u in users if u["username"].startswith(query)])

    # -- chats --------------------------------------------------------------

    @app.get("/api/chats")
    async def list_chats():
        visible = [c for c in state.chats.values() if state.self_id not in c["hiddenBy"]]
        return ok(sorted(visible, key=lambda c: c["updatedAt"], reverse=True))

    @app.post("/api/chats")
    async def create_chat(request: Request):
        body = await request.json()
        if not body.get("userId"):
            return fail(400, "userId is required")
        for chat in state.chats.values():
            if body["userId"] in [p["_id"] for p in chat["participants"]]:
                return ok(chat)
        return ok(state.add_chat(state.next_id("c"), other=body["userId"]))

    @app.delete("/api/chats/{chat_id}")
    async def hide_chat(chat_id: str):
        if chat_id not in state.chats:
            return fail(404, "Chat not found")
        state.chats[chat_id]["hiddenBy"].append(state.self_id)
        return ok(message="Chat hidden")

    # -- messages -----------------------------------------------------------

    @app.post("/api/messages")
    async def send_message(request: Request):
        body = await request.json()
        if state.fail_sends:
            state.fail_sends -= 1
            return fail(500, "Failed to send message")
        chat_id = body["chatId"]
        if chat_id not in state.chats:
            return fail(404, "Chat not found")
        doc = message_doc(
            state.next_id("m"), chat_id, state.self_id, body.get("content", ""),
            state.tick(), client_id=body.get("clientId"),
        )
        state.messages[chat_id].append(doc)
        return JSONResponse(status_code=201, content=ok(doc))

    @app.get("/api/messages/{chat_id}")
    async def list_messages(chat_id: str, page: int = 1, limit: int = 50):
        if chat_id not in state.chats:
            return fail(404, "Chat not found")
        state.set_unread(chat_id, 0)
        docs = state.messages.get(chat_id, [])
        end = len(docs) - (page - 1) * limit
        start = max(end - limit, 0)
        return ok(docs[start:max(end, 0)])

    # -- notifications ------------------------------------------------------

    @app.get("/api/notifications")
    async def list_notifications():
        return ok(sorted(state.notifications, key=lambda n: n["createdAt"], reverse=True))

    @app.patch("/api/notifications/mark-read")
    async def mark_read():
        for n in state.notifications:
            n["isRead"] = True
        return ok(message="All notifications marked as read")

    @app.delete("/api/notifications/clear-all")
    async def clear_all():
        state.notifications.clear()
        return ok(message="All notifications cleared")

    @app.delete("/api/notifications/{notification_id}")
    async def delete_notification(notification_id: str):
        before = len(state.notifications)
        state.notifications = [n for n in state.notifications if n["_id"] != notification_id]
        if len(state.notifications) == before:
            return fail(404, "Notification not found")
        return ok(message="Notification deleted")

    # -- posts --------------------------------------------------------------

    @app.post("/api/posts/{post_id}/like")
    async def like(post_id: str):
        likers = state.likes.setdefault(post_id, set())
        if state.self_id in likers:
            likers.discard(state.self_id)
        else:
            likers.add(state.self_id)
        return {"success": True, "isLiked": state.self_id in likers, "likesCount": len(likers)}

    @app.post("/api/posts/{post_id}/save")
    async def save(post_id: str):
        savers = state.saves.setdefault(post_id, set())
        if state.self_id in savers:
            savers.discard(state.self_id)
        else:
            savers.add(state.self_id)
        return {"success": True, "isSaved": state.self_id in savers}

    @app.get("/api/posts/{post_id}/comments")
    async def list_comments(post_id: str):
        return ok(state.comments.get(post_id, []))

    @app.post("/api/posts/{post_id}/comments")
    async def add_comment(post_id: str, request: Request):
        body = await request.json()
        if not (body.get("text") or "").strip():
            return fail(400, "Comment text is required")
        doc = {
            "_id": state.next_id("k"),
            "post": post_id,
            "author": {"_id": state.self_id, "username": "alice"},
            "text": body["text"],
            "parentComment": body.get("parentCommentId"),
            "createdAt": (BASE_TIME + timedelta(seconds=state.tick())).isoformat(),
        }
        state.comments.setdefault(post_id, []).append(doc)
        return JSONResponse(status_code=201, content=ok(doc))

    @app.delete("/api/posts/{post_id}/comments/{comment_id}")
    async def delete_comment(post_id: str, comment_id: str):
        comments = state.comments.get(post_id, [])
        state.comments[post_id] = [c for c in comments if c["_id"] != comment_id]
        return ok(message="Comment deleted")

    return app


@pytest.fixture
def stub() -> StubPicsta:
    return StubPicsta()


@pytest.fixture
def stub_app(stub: StubPicsta) -> FastAPI:
    return build_stub_app(stub)


@pytest_asyncio.fixture
async def api(stub_app: FastAPI):
    client = ApiClient(
        "http://testserver/api",
        cookies={"accessToken": "token"},
        transport=httpx.ASGITransport(app=stub_app),
    )
    yield PicstaApi(client)
    await client.close()


@pytest.fixture
def config() -> PicstaConfig:
    return PicstaConfig(
        server={"api_base_url": "http://testserver/api", "socket_url": "http://testserver"},
        connection={"backoff_jitter": 0.0, "backoff_max_seconds": 4.0},
        secrets={"session": {"access_token": "token", "refresh_token": "refresh"}},
    )


@pytest.fixture(autouse=True)
def reset_config():
    """Keep the process-wide config from leaking between tests."""
    yield
    set_config(None)
