"""Tests for the typed event bus."""
import logging

from picsta.events import (
    ConversationsChanged,
    Event,
    EventBus,
    PostUpdated,
    UserFollowUpdated,
)


def test_subscribers_receive_their_event_type_only():
    bus = EventBus()
    posts, follows = [], []
    bus.subscribe(PostUpdated, posts.append)
    bus.subscribe(UserFollowUpdated, follows.append)

    bus.publish(PostUpdated(post_id="p1", liked=True, likes_count=3))

    assert posts == [PostUpdated(post_id="p1", liked=True, likes_count=3)]
    assert follows == []


def test_base_class_subscription_sees_everything():
    bus = EventBus()
    seen = []
    bus.subscribe(Event, seen.append)

    bus.publish(ConversationsChanged())
    bus.publish(UserFollowUpdated(user_id="u2", is_following=True))

    assert [type(e).__name__ for e in seen] == ["ConversationsChanged", "UserFollowUpdated"]


def test_unsubscribe():
    bus = EventBus()
    seen = []
    unsubscribe = bus.subscribe(PostUpdated, seen.append)

    unsubscribe()
    unsubscribe()

    assert bus.publish(PostUpdated(post_id="p1")) == 0
    assert bus.subscriber_count(PostUpdated) == 0


def test_failing_subscriber_does_not_block_others(caplog):
    bus = EventBus()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    bus.subscribe(PostUpdated, broken)
    bus.subscribe(PostUpdated, seen.append)

    with caplog.at_level(logging.ERROR):
        delivered = bus.publish(PostUpdated(post_id="p1"))

    assert delivered == 2
    assert len(seen) == 1
    assert "handler" in caplog.text
