"""Per-conversation unread counters and the global badge.

Counters move locally on every real-time event and are overwritten by the
server's authoritative counts on each reconciliation poll. The global badge
is the sum of all counters and is kept incrementally, so reading it is O(1).

Mark-read is best effort: when the call fails the local counter stays at 0
and the conversation is queued; :meth:`UnreadAggregator.flush_pending`
retries the queue before the next authoritative overwrite.
"""
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

from picsta.api.errors import ApiError, TransportError
from picsta.events import EventBus, UnreadChanged

logger = logging.getLogger(__name__)

MarkRead = Callable[[str], Awaitable[None]]


class UnreadAggregator:
    """Tracks unread counts for each conversation.

    Args:
        mark_read: Coroutine that zeroes the server-side counter of a
            conversation.
        bus: Optional event bus for ``UnreadChanged``.
    """

    def __init__(self, mark_read: MarkRead, bus: Optional[EventBus] = None) -> None:
        self._mark_read = mark_read
        self._bus = bus
        self._counts: Dict[str, int] = {}
        self._total = 0
        self._active: Optional[str] = None
        self._stale: Set[str] = set()
        # Active conversations that received messages since they were marked read
        self._unsynced: Set[str] = set()

    # -------------------------------------------------------------------------
    # Read access
    # -------------------------------------------------------------------------

    @property
    def total(self) -> int:
        """Global badge: sum of all conversation counters."""
        return self._total

    @property
    def active(self) -> Optional[str]:
        return self._active

    @property
    def pending_mark_read(self) -> List[str]:
        return sorted(self._stale)

    def count(self, conversation_id: str) -> int:
        return self._counts.get(conversation_id, 0)

    def counts(self) -> Dict[str, int]:
        return {cid: n for cid, n in self._counts.items() if n}

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def set_active(self, conversation_id: Optional[str]) -> None:
        self._active = conversation_id

    def on_message_arrived(self, conversation_id: str, is_active: Optional[bool] = None) -> int:
        """Count one new message unless the conversation is on screen.

        Args:
            conversation_id: Conversation the message belongs to.
            is_active: Whether it is the open conversation; defaults to
                comparing with :attr:`active`.

        Returns:
            The conversation's counter after the event.
        """
        if is_active is None:
            is_active = conversation_id == self._active
        if is_active:
            self._unsynced.add(conversation_id)
            return self.count(conversation_id)
        return self._set(conversation_id, self.count(conversation_id) + 1)

    async def on_conversation_opened(self, conversation_id: str) -> bool:
        """Zero the counter locally, then mark the conversation read server-side.

        Returns:
            False if the mark-read call failed; it is retried by
            :meth:`flush_pending`.
        """
        self._active = conversation_id
        self._set(conversation_id, 0)
        self._unsynced.discard(conversation_id)
        return await self._send_mark_read(conversation_id)

    async def on_conversation_closed(self) -> bool:
        """Leave the active conversation.

        The server counts every message for all participants but the sender,
        so messages that arrived while the conversation was on screen are
        marked read now. Until that call succeeds the conversation is queued
        and stays at 0 across authoritative overwrites.

        Returns:
            False if the mark-read call failed.
        """
        conversation_id, self._active = self._active, None
        if conversation_id is None or conversation_id not in self._unsynced:
            return True
        self._unsynced.discard(conversation_id)
        self._stale.add(conversation_id)
        return await self._send_mark_read(conversation_id)

    async def flush_pending(self) -> int:
        """Retry queued mark-read calls. Returns how many succeeded."""
        done = 0
        for conversation_id in sorted(self._stale):
            if await self._send_mark_read(conversation_id):
                done += 1
        return done

    def set_counts(self, counts: Dict[str, int]) -> None:
        """Overwrite every counter with authoritative values.

        The active conversation and conversations with a queued mark-read
        stay at 0.
        """
        self._counts = {}
        for conversation_id, count in counts.items():
            if conversation_id == self._active or conversation_id in self._stale:
                continue
            if count > 0:
                self._counts[conversation_id] = count
        self._total = sum(self._counts.values())
        logger.debug("[Unread] reconciled %d conversation(s), total=%d", len(self._counts), self._total)
        self._publish(None, 0)

    def forget(self, conversation_id: str) -> None:
        """Drop a conversation (hidden or left)."""
        self._stale.discard(conversation_id)
        self._unsynced.discard(conversation_id)
        if conversation_id in self._counts:
            self._set(conversation_id, 0)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    async def _send_mark_read(self, conversation_id: str) -> bool:
        try:
            await self._mark_read(conversation_id)
        except (ApiError, TransportError) as e:
            logger.warning("[Unread] mark-read for %s failed, will retry: %s", conversation_id, e)
            self._stale.add(conversation_id)
            return False
        self._stale.discard(conversation_id)
        return True

    def _set(self, conversation_id: str, count: int) -> int:
        previous = self._counts.get(conversation_id, 0)
        if count:
            self._counts[conversation_id] = count
        else:
            self._counts.pop(conversation_id, None)
        self._total += count - previous
        if count != previous:
            self._publish(conversation_id, count)
        return count

    def _publish(self, conversation_id: Optional[str], count: int) -> None:
        if self._bus is not None:
            self._bus.publish(
                UnreadChanged(conversation_id=conversation_id, count=count, total=self._total)
            )
