"""Tests for optimistic sending, retry and optimistic toggles."""
import asyncio
from unittest.mock import AsyncMock

import pytest

from picsta.api.errors import ApiError, TransportError, UnknownMessageError
from picsta.api.schemas import LikeResult
from picsta.events import EventBus, MessageStateChanged, PostUpdated, UserFollowUpdated
from picsta.messaging.delivery import (
    DeliveryLayer,
    OptimisticToggle,
    ToggleState,
    coerce_payload,
    post_like_toggle,
    user_follow_toggle,
)
from picsta.messaging.reducer import StreamReducer
from picsta.messaging.schemas import DeliveryState, Message, MessageKind

from conftest import message_doc


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def reducer(bus):
    return StreamReducer(self_id="u1", bus=bus)


@pytest.fixture
def states(bus):
    seen = []
    bus.subscribe(MessageStateChanged, lambda e: seen.append((e.temp_id, e.message_id, e.state)))
    return seen


class TestCoercePayload:
    def test_accepts_text_dict_and_string(self):
        assert coerce_payload({"text": "hi"}).content == "hi"
        assert coerce_payload("hi").content == "hi"
        assert coerce_payload({"postId": "p1", "type": "post"}).kind == MessageKind.POST

    def test_empty_payload_rejected(self):
        with pytest.raises(ValueError):
            coerce_payload({"text": "   "})


class TestSendAgainstStub:
    @pytest.mark.asyncio
    async def test_hello_becomes_m_id_at_same_position(self, api, stub, reducer, states, bus):
        stub.add_chat("c1")
        reducer.apply_incoming(Message.model_validate(message_doc("m0", "c1", "u2", "yo", 0)))
        delivery = DeliveryLayer(reducer, api.messages, bus=bus)

        sent = await delivery.send("c1", {"text": "hello"})

        assert sent.state == DeliveryState.SENT
        assert sent.content == "hello"
        assert [m.id for m in reducer.messages("c1")] == ["m0", sent.id]
        temp_id = sent.client_id
        assert temp_id.startswith("temp-")
        assert states == [(temp_id, temp_id, "pending"), (temp_id, sent.id, "sent")]
        assert delivery.outbox == []

    @pytest.mark.asyncio
    async def test_failure_then_retry(self, api, stub, reducer, states, bus):
        stub.add_chat("c1")
        stub.fail_sends = 1
        delivery = DeliveryLayer(reducer, api.messages, bus=bus)

        failed = await delivery.send("c1", {"text": "hi"})

        assert failed.state == DeliveryState.FAILED
        assert failed.error == "Failed to send message"
        assert delivery.failed("c1") == [failed]

        sent = await delivery.retry(failed.id)

        assert sent.state == DeliveryState.SENT
        assert [m.id for m in reducer.messages("c1")] == [sent.id]
        assert [s for (_, _, s) in states] == ["pending", "failed", "pending", "sent"]
        assert delivery.failed() == []


class TestSendOrdering:
    @pytest.mark.asyncio
    async def test_concurrent_sends_display_in_submission_order(self, reducer):
        gates = {}
        counter = iter(range(100, 0, -1))

        async def send(chat_id, content="", client_id=None, **kwargs):
            gates[content] = asyncio.Event()
            await gates[content].wait()
            # Later submissions get earlier server timestamps
            return Message.model_validate(
                message_doc(f"m-{content}", chat_id, "u1", content, next(counter), client_id)
            )

        messages = AsyncMock()
        messages.send.side_effect = send
        delivery = DeliveryLayer(reducer, messages)

        tasks = [asyncio.ensure_future(delivery.send("c1", f"msg{i}")) for i in range(3)]
        while len(gates) < 3:
            await asyncio.sleep(0)
        for content in ("msg2", "msg0", "msg1"):
            gates[content].set()
            await asyncio.sleep(0)
        await asyncio.gather(*tasks)

        assert [m.content for m in reducer.messages("c1")] == ["msg0", "msg1", "msg2"]
        assert all(m.state == DeliveryState.SENT for m in reducer.messages("c1"))


class TestRetry:
    @pytest.mark.asyncio
    async def test_unknown_id_raises(self, reducer):
        delivery = DeliveryLayer(reducer, AsyncMock())
        with pytest.raises(UnknownMessageError):
            await delivery.retry("temp-nope")

    @pytest.mark.asyncio
    async def test_broadcast_confirmation_makes_retry_a_noop(self, reducer):
        messages = AsyncMock()
        messages.send.side_effect = TransportError("offline")
        delivery = DeliveryLayer(reducer, messages)
        failed = await delivery.send("c1", "hi")

        # The server did persist it; the broadcast echoes the client id.
        reducer.apply_incoming(Message.model_validate(
            message_doc("m9", "c1", "u1", "hi", 5, client_id=failed.id)
        ))
        result = await delivery.retry(failed.id)

        assert result.id == "m9"
        assert messages.send.await_count == 1
        assert delivery.outbox == []

    @pytest.mark.asyncio
    async def test_ack_event_reconciles(self, reducer, states, bus):
        messages = AsyncMock()
        messages.send.side_effect = ApiError("Server error", status_code=500)
        delivery = DeliveryLayer(reducer, messages, bus=bus)
        failed = await delivery.send("c1", "hi")

        confirmed = delivery.handle_ack({
            "clientId": failed.id,
            "message": message_doc("m42", "c1", "u1", "hi", 5),
        })

        assert confirmed.id == "m42"
        assert reducer.messages("c1")[0].state == DeliveryState.SENT
        assert states[-1] == (failed.id, "m42", "sent")


class TestOptimisticToggle:
    @pytest.mark.asyncio
    async def test_like_flips_then_adopts_server_value(self, api, bus):
        events = []
        bus.subscribe(PostUpdated, events.append)
        likes = post_like_toggle(api.posts, bus)
        likes.seed("p1", active=False, count=4)

        state = await likes.toggle("p1")

        # optimistic 5, server answer 1 (only our like exists in the stub)
        assert [e.likes_count for e in events] == [5, 1]
        assert state == ToggleState(active=True, count=1)

    @pytest.mark.asyncio
    async def test_failure_rolls_back(self, bus):
        events = []
        bus.subscribe(UserFollowUpdated, events.append)
        users = AsyncMock()
        users.toggle_follow.side_effect = ApiError("You cannot follow yourself", status_code=400)
        follows = user_follow_toggle(users, bus)
        follows.seed("u1", active=False, count=10)

        state = await follows.toggle("u1")

        assert state.active is False and state.count == 10
        assert state.error == "You cannot follow yourself"
        assert [e.is_following for e in events] == [True, False]

    @pytest.mark.asyncio
    async def test_in_flight_toggle_is_not_repeated(self):
        gate = asyncio.Event()

        async def call(key):
            await gate.wait()
            return LikeResult(isLiked=True, likesCount=1)

        toggle = OptimisticToggle(
            "like", call,
            lambda r, s: ToggleState(active=r.is_liked, count=r.likes_count),
            lambda key, s: PostUpdated(post_id=key, liked=s.active),
        )
        first = asyncio.ensure_future(toggle.toggle("p1"))
        await asyncio.sleep(0)
        assert toggle.is_busy("p1")

        second = await toggle.toggle("p1")
        gate.set()
        final = await first

        assert second.active is True
        assert final == ToggleState(active=True, count=1)
