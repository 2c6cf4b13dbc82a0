"""Message stream reducer: one ordered, de-duplicated timeline per conversation.

Real-time ``new_message`` events, REST history pages and local optimistic
sends all flow into a :class:`MessageStream`. The stream guarantees:

    - exactly one entry per canonical message id,
    - ascending order by creation timestamp, ties broken by id,
    - optimistic entries land at the tail and keep that position when they
      are reconciled to their canonical id, so own messages display in
      submission order no matter how the server answers.

Ordering is kept with a sorted key list (``bisect``), so inserts and
in-place replacements never re-sort the whole stream.

Correlation of an optimistic entry with its server copy, in order of
preference:
    1. the server echoes the temp id as ``clientId``,
    2. an own-sender real-time message whose kind and payload match the
       oldest pending entry,
    3. ``reconcile(temp_id, canonical)`` from the send response, which also
       drops any separately inserted copy of the same canonical id.

Thread Safety:
    Designed for a single asyncio event loop. Not thread-safe.
"""
import logging
from bisect import bisect_left, bisect_right
from collections import OrderedDict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from picsta.events import EventBus, MessagesChanged

from .schemas import DeliveryState, Message, utcnow

logger = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

# Maximum number of reconciled temp ids remembered per conversation
RECONCILED_CACHE_SIZE = 1000

# Rank keeps server and local keys with equal timestamps apart
_SERVER_RANK = 0
_LOCAL_RANK = 1

SortKey = Tuple[datetime, int, str]


# =============================================================================
# Per-conversation stream
# =============================================================================


class MessageStream:
    """Ordered timeline of one conversation.

    Args:
        conversation_id: The conversation this stream belongs to.
        self_id: The signed-in user's id, used to correlate own broadcasts
            with pending sends when the server does not echo ``clientId``.
    """

    def __init__(self, conversation_id: str, self_id: Optional[str] = None) -> None:
        self.conversation_id = conversation_id
        self.self_id = self_id

        # Parallel sorted lists: position i holds key and current entry id
        self._keys: List[SortKey] = []
        self._ids: List[str] = []

        # current entry id -> message / sort key
        self._messages: Dict[str, Message] = {}
        self._key_of: Dict[str, SortKey] = {}

        # temp id -> entry id, for optimistic entries not yet reconciled
        # (insertion order is submission order)
        self._pending: "OrderedDict[str, str]" = OrderedDict()

        # temp id -> canonical id, for reconciled entries (LRU)
        self._reconciled: "OrderedDict[str, str]" = OrderedDict()

        self._local_seq = 0

    # -------------------------------------------------------------------------
    # Read access
    # -------------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._messages

    def messages(self) -> List[Message]:
        """Snapshot of the timeline, oldest first."""
        return [self._messages[mid] for mid in self._ids]

    def ids(self) -> List[str]:
        return list(self._ids)

    def get(self, message_id: str) -> Optional[Message]:
        """Look up an entry by canonical id or by the temp id it was sent with."""
        if message_id in self._messages:
            return self._messages[message_id]
        current = self._pending.get(message_id) or self._reconciled.get(message_id)
        return self._messages.get(current) if current else None

    def position(self, message_id: str) -> Optional[int]:
        entry = self.get(message_id)
        if entry is None:
            return None
        return self._index_of(entry.id)

    @property
    def pending_ids(self) -> List[str]:
        """Temp ids of optimistic entries still awaiting their canonical id."""
        return list(self._pending.keys())

    def failed(self) -> List[Message]:
        return [m for m in self.messages() if m.state == DeliveryState.FAILED]

    @property
    def latest(self) -> Optional[Message]:
        return self._messages[self._ids[-1]] if self._ids else None

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def apply_incoming(self, message: Message) -> bool:
        """Insert a server message, or ignore it if its id is already present.

        Returns:
            True if the stream changed.
        """
        return self._apply_server(message, correlate_by_content=True)

    def apply_optimistic(self, temp_message: Message) -> Message:
        """Insert a local message at the tail with ``pending`` state.

        Applying the same temp id twice is a no-op that returns the entry.
        """
        temp_id = temp_message.id
        existing = self.get(temp_id)
        if existing is not None:
            return existing

        anchor = temp_message.created_at
        if self._keys and self._keys[-1][0] > anchor:
            anchor = self._keys[-1][0]
        self._local_seq += 1
        key = (anchor, _LOCAL_RANK, f"{self._local_seq:012d}")

        entry = temp_message.model_copy(update={
            "state": DeliveryState.PENDING,
            "client_id": temp_message.client_id or temp_id,
            "created_at": anchor,
            "error": None,
        })
        self._insert(entry, key)
        self._pending[temp_id] = temp_id
        return entry

    def reconcile(self, temp_id: str, canonical: Message) -> Optional[Message]:
        """Replace the optimistic entry ``temp_id`` with its canonical copy.

        The canonical entry takes the optimistic entry's position. If the
        broadcast already merged it, the entry is refreshed in place. If an
        uncorrelated copy of the canonical id was inserted meanwhile, that
        copy is dropped so exactly one row remains.

        Returns:
            The reconciled entry, or None if ``temp_id`` is unknown.
        """
        entry = canonical.model_copy(update={
            "state": DeliveryState.SENT,
            "error": None,
            "client_id": temp_id,
        })

        if temp_id in self._reconciled:
            current_id = self._reconciled[temp_id]
            self._reconciled.move_to_end(temp_id)
            if current_id in self._messages:
                self._replace_in_place(current_id, entry)
                return entry
            return None

        current_id = self._pending.pop(temp_id, None)
        if current_id is None:
            logger.debug(
                "[Stream] reconcile for unknown temp id %s in %s", temp_id, self.conversation_id
            )
            return None

        if entry.id != current_id and entry.id in self._messages:
            # Broadcast copy arrived without correlation; keep the optimistic slot.
            self._remove(entry.id)
        self._replace_in_place(current_id, entry)
        self._remember(temp_id, entry.id)
        return entry

    def set_state(
        self, temp_id: str, state: DeliveryState, error: Optional[str] = None
    ) -> Optional[Message]:
        """Move a still-unreconciled entry to ``pending`` or ``failed``."""
        current_id = self._pending.get(temp_id)
        if current_id is None:
            return None
        entry = self._messages[current_id].model_copy(update={"state": state, "error": error})
        self._messages[current_id] = entry
        return entry

    def apply_history_page(self, messages: Iterable[Message]) -> int:
        """Merge a REST page: union by id, sorted insert.

        Entries already in the stream (real-time or optimistic) are left
        untouched. Messages for other conversations are ignored.

        Returns:
            Number of entries added or merged.
        """
        changed = 0
        for message in messages:
            if message.conversation_id != self.conversation_id:
                continue
            if self._apply_server(message, correlate_by_content=False):
                changed += 1
        return changed

    def remove_messages(self, message_ids: Iterable[str]) -> int:
        removed = 0
        for message_id in message_ids:
            entry = self.get(message_id)
            if entry is None:
                continue
            self._remove(entry.id)
            for temp_id, current in list(self._pending.items()):
                if current == entry.id:
                    del self._pending[temp_id]
            removed += 1
        return removed

    def clear(self) -> None:
        self._keys.clear()
        self._ids.clear()
        self._messages.clear()
        self._key_of.clear()
        self._pending.clear()
        self._reconciled.clear()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _apply_server(self, message: Message, correlate_by_content: bool) -> bool:
        if message.id in self._messages:
            return False

        entry = message.model_copy(update={"state": DeliveryState.SENT, "error": None})
        temp_id = self._match_pending(entry, correlate_by_content)
        if temp_id is not None:
            current_id = self._pending.pop(temp_id)
            entry = entry.model_copy(update={"client_id": temp_id})
            self._replace_in_place(current_id, entry)
            self._remember(temp_id, entry.id)
            logger.debug(
                "[Stream] merged %s into pending %s (%s)", entry.id, temp_id, self.conversation_id
            )
            return True

        self._insert(entry, (entry.created_at, _SERVER_RANK, entry.id))
        return True

    def _match_pending(self, message: Message, correlate_by_content: bool) -> Optional[str]:
        if not self._pending:
            return None
        if message.client_id and message.client_id in self._pending:
            return message.client_id
        if not correlate_by_content or not self.self_id or message.sender_id != self.self_id:
            return None
        for temp_id, current_id in self._pending.items():
            candidate = self._messages[current_id]
            if (candidate.state == DeliveryState.PENDING
                    and candidate.kind == message.kind
                    and candidate.content == message.content
                    and candidate.post_id == message.post_id):
                return temp_id
        return None

    def _remember(self, temp_id: str, canonical_id: str) -> None:
        self._reconciled[temp_id] = canonical_id
        while len(self._reconciled) > RECONCILED_CACHE_SIZE:
            self._reconciled.popitem(last=False)

    def _index_of(self, message_id: str) -> int:
        key = self._key_of[message_id]
        return bisect_left(self._keys, key)

    def _insert(self, message: Message, key: SortKey) -> None:
        index = bisect_right(self._keys, key)
        self._keys.insert(index, key)
        self._ids.insert(index, message.id)
        self._messages[message.id] = message
        self._key_of[message.id] = key

    def _remove(self, message_id: str) -> None:
        index = self._index_of(message_id)
        del self._keys[index]
        del self._ids[index]
        del self._messages[message_id]
        del self._key_of[message_id]

    def _replace_in_place(self, old_id: str, message: Message) -> None:
        index = self._index_of(old_id)
        key = self._key_of.pop(old_id)
        del self._messages[old_id]
        self._ids[index] = message.id
        self._messages[message.id] = message
        self._key_of[message.id] = key


# =============================================================================
# Reducer over all conversations
# =============================================================================


class StreamReducer:
    """Routes messages to per-conversation streams and announces changes.

    Args:
        self_id: The signed-in user's id (may be set later).
        bus: Optional event bus; ``MessagesChanged`` is published whenever a
            stream changes.
    """

    def __init__(self, self_id: Optional[str] = None, bus: Optional[EventBus] = None) -> None:
        self._self_id = self_id
        self._bus = bus
        self._streams: Dict[str, MessageStream] = {}
        # temp id -> conversation id
        self._temp_index: Dict[str, str] = {}

    @property
    def self_id(self) -> Optional[str]:
        return self._self_id

    @self_id.setter
    def self_id(self, value: Optional[str]) -> None:
        self._self_id = value
        for stream in self._streams.values():
            stream.self_id = value

    def stream(self, conversation_id: str) -> MessageStream:
        if conversation_id not in self._streams:
            self._streams[conversation_id] = MessageStream(conversation_id, self._self_id)
        return self._streams[conversation_id]

    def has_stream(self, conversation_id: str) -> bool:
        return conversation_id in self._streams

    def messages(self, conversation_id: str) -> List[Message]:
        if conversation_id not in self._streams:
            return []
        return self._streams[conversation_id].messages()

    def resolve(self, temp_id: str) -> Optional[Message]:
        """Current entry for a temp id (canonical once reconciled)."""
        conversation_id = self._temp_index.get(temp_id)
        if conversation_id is None:
            return None
        return self.stream(conversation_id).get(temp_id)

    def apply_incoming(self, message: Message) -> bool:
        changed = self.stream(message.conversation_id).apply_incoming(message)
        if changed:
            self._changed(message.conversation_id)
        return changed

    def apply_optimistic(self, temp_message: Message) -> Message:
        entry = self.stream(temp_message.conversation_id).apply_optimistic(temp_message)
        self._temp_index[temp_message.id] = temp_message.conversation_id
        self._changed(temp_message.conversation_id)
        return entry

    def reconcile(self, temp_id: str, canonical: Message) -> Optional[Message]:
        conversation_id = self._temp_index.get(temp_id, canonical.conversation_id)
        entry = self.stream(conversation_id).reconcile(temp_id, canonical)
        if entry is not None:
            self._changed(conversation_id)
        return entry

    def mark_failed(self, temp_id: str, error: str) -> Optional[Message]:
        return self._set_state(temp_id, DeliveryState.FAILED, error)

    def mark_pending(self, temp_id: str) -> Optional[Message]:
        return self._set_state(temp_id, DeliveryState.PENDING, None)

    def apply_history_page(self, conversation_id: str, messages: Iterable[Message]) -> int:
        changed = self.stream(conversation_id).apply_history_page(messages)
        if changed:
            self._changed(conversation_id)
        return changed

    def remove_messages(self, conversation_id: str, message_ids: Iterable[str]) -> int:
        if conversation_id not in self._streams:
            return 0
        removed = self._streams[conversation_id].remove_messages(message_ids)
        if removed:
            self._changed(conversation_id)
        return removed

    def clear(self, conversation_id: str) -> None:
        stream = self._streams.pop(conversation_id, None)
        if stream is None:
            return
        self._temp_index = {
            t: c for t, c in self._temp_index.items() if c != conversation_id
        }
        self._changed(conversation_id)

    def evict(self, conversation_id: str) -> bool:
        """Drop a stream that is no longer shown.

        Streams with optimistic entries still awaiting their canonical id
        are kept so a late ack or retry can find them.

        Returns:
            True if the stream was dropped.
        """
        stream = self._streams.get(conversation_id)
        if stream is None or stream.pending_ids:
            return False
        del self._streams[conversation_id]
        self._temp_index = {
            t: c for t, c in self._temp_index.items() if c != conversation_id
        }
        logger.debug("[Reducer] evicted stream %s", conversation_id)
        return True

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _set_state(
        self, temp_id: str, state: DeliveryState, error: Optional[str]
    ) -> Optional[Message]:
        conversation_id = self._temp_index.get(temp_id)
        if conversation_id is None:
            return None
        entry = self.stream(conversation_id).set_state(temp_id, state, error)
        if entry is not None:
            self._changed(conversation_id)
        return entry

    def _changed(self, conversation_id: str) -> None:
        if self._bus is not None:
            self._bus.publish(MessagesChanged(conversation_id=conversation_id))


def new_temp_message(
    conversation_id: str,
    sender_id: str,
    temp_id: str,
    **payload,
) -> Message:
    """Build an optimistic message stamped now."""
    payload.setdefault("state", DeliveryState.PENDING)
    return Message(
        id=temp_id,
        conversation_id=conversation_id,
        sender_id=sender_id,
        client_id=temp_id,
        created_at=utcnow(),
        **payload,
    )
