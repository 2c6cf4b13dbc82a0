"""Room membership for the real-time channel.

The set of joined rooms is the source of truth for what the session wants to
receive. It survives transport drops so the connection manager can replay
every join after a reconnect.
"""
import logging
from typing import Callable, FrozenSet, Set

logger = logging.getLogger(__name__)

# Client -> server event names
JOIN_EVENT = "join_chat"
LEAVE_EVENT = "leave_chat"

# emit(event, payload) -> True if the frame was handed to a live transport
Emitter = Callable[[str, str], bool]


class RoomMembership:
    """Tracks joined conversation rooms; join and leave are idempotent.

    Args:
        emit: Sends a frame on the socket. Returns False while offline; the
            join is still recorded and replayed by :meth:`rejoin_all`.
    """

    def __init__(self, emit: Emitter) -> None:
        self._emit = emit
        self._rooms: Set[str] = set()

    @property
    def joined(self) -> FrozenSet[str]:
        return frozenset(self._rooms)

    def __contains__(self, conversation_id: str) -> bool:
        return conversation_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)

    def join_room(self, conversation_id: str) -> bool:
        """Join ``conversation_id``. Returns False if already joined."""
        if conversation_id in self._rooms:
            return False
        self._rooms.add(conversation_id)
        if not self._emit(JOIN_EVENT, conversation_id):
            logger.debug("[Rooms] offline, join %s deferred", conversation_id)
        return True

    def leave_room(self, conversation_id: str) -> bool:
        """Leave ``conversation_id``. Returns False if it was not joined."""
        if conversation_id not in self._rooms:
            return False
        self._rooms.discard(conversation_id)
        self._emit(LEAVE_EVENT, conversation_id)
        return True

    def rejoin_all(self) -> int:
        """Re-emit a join for every recorded room (after a reconnect)."""
        count = 0
        for conversation_id in sorted(self._rooms):
            if self._emit(JOIN_EVENT, conversation_id):
                count += 1
        if count:
            logger.info("[Rooms] re-joined %d room(s)", count)
        return count

    def clear(self) -> None:
        self._rooms.clear()
