"""Tests for the conversation directory and the reconciliation poller."""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from picsta.messaging.conversations import ConversationDirectory
from picsta.messaging.poller import ReconciliationPoller
from picsta.messaging.schemas import Conversation, Message

from conftest import BASE_TIME, message_doc


def chat(chat_id, seconds, hidden_by=()):
    return Conversation.model_validate({
        "_id": chat_id,
        "participants": [{"_id": "u1"}, {"_id": "u2"}, "u2"],
        "hiddenBy": list(hidden_by),
        "updatedAt": (BASE_TIME + timedelta(seconds=seconds)).isoformat(),
    })


@pytest.fixture
def directory():
    d = ConversationDirectory(self_id="u1")
    d.load([chat("c1", 10), chat("c2", 20), chat("c3", 30, hidden_by=["u1"])])
    return d


class TestConversationDirectory:
    def test_visible_is_newest_first_without_hidden(self, directory):
        assert [c.id for c in directory.visible()] == ["c2", "c1"]

    def test_participants_are_unique(self, directory):
        assert directory.get("c1").participants == ["u1", "u2"]

    def test_new_message_moves_to_top_and_unhides(self, directory):
        message = Message.model_validate(message_doc("m1", "c3", "u2", "back", 100))

        assert directory.on_message(message) is True

        assert [c.id for c in directory.visible()] == ["c3", "c2", "c1"]
        assert directory.get("c3").last_message.id == "m1"

    def test_unknown_conversation_reported(self, directory):
        message = Message.model_validate(message_doc("m1", "c9", "u2", "hi", 100))
        assert directory.on_message(message) is False

    def test_older_message_does_not_replace_last_message(self, directory):
        directory.on_message(Message.model_validate(message_doc("m2", "c1", "u2", "new", 200)))
        directory.on_message(Message.model_validate(message_doc("m1", "c1", "u2", "old", 150)))
        assert directory.get("c1").last_message.id == "m2"

    def test_hide_and_restore(self, directory):
        previous = directory.hide("c1")
        assert [c.id for c in directory.visible()] == ["c2"]

        directory.restore(previous)
        assert [c.id for c in directory.visible()] == ["c2", "c1"]

    def test_upsert_keeps_populated_last_message(self, directory):
        directory.on_message(Message.model_validate(message_doc("m1", "c1", "u2", "hi", 100)))

        directory.upsert(Conversation.model_validate({
            "_id": "c1",
            "participants": ["u1", "u2"],
            "lastMessage": "m1",
            "updatedAt": (BASE_TIME + timedelta(seconds=100)).isoformat(),
        }))

        assert directory.get("c1").last_message.content == "hi"


class TestReconciliationPoller:
    @pytest.mark.asyncio
    async def test_runs_callbacks_each_round_and_survives_failures(self, caplog):
        healthy = AsyncMock()
        broken = AsyncMock(side_effect=RuntimeError("boom"))
        rounds = asyncio.Event()

        async def sleep(delay):
            if poller.rounds >= 2:
                rounds.set()
                await asyncio.Event().wait()

        poller = ReconciliationPoller(30.0, [broken, healthy], sleep=sleep)
        await poller.start()
        await asyncio.wait_for(rounds.wait(), timeout=1.0)
        await poller.stop()

        assert healthy.await_count == 2
        assert broken.await_count == 2
        assert not poller.running
        assert "reconciliation callback failed" in caplog.text

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        async def sleep(delay):
            await asyncio.Event().wait()

        poller = ReconciliationPoller(30.0, sleep=sleep)
        await poller.start()
        task = poller._task
        await poller.start()
        assert poller._task is task
        await poller.stop()
