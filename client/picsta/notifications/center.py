"""Notification list, unread count and optimistic list operations."""
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from picsta.api.errors import ApiError, TransportError
from picsta.api.services import NotificationApi
from picsta.events import EventBus, NotificationsChanged
from picsta.messaging.schemas import as_utc, utcnow

from .schemas import Notification

logger = logging.getLogger(__name__)

# Display buckets, newest first, with the age limit of each
GROUPS: List[Tuple[str, Optional[timedelta]]] = [
    ("Today", timedelta(days=1)),
    ("This week", timedelta(days=7)),
    ("This month", timedelta(days=30)),
    ("Earlier", None),
]


def relative_time(created_at: datetime, now: Optional[datetime] = None) -> str:
    """Compact age label: ``now``, ``5m``, ``3h``, ``2d``, ``1w`` or ``Mar 4``."""
    now = as_utc(now) if now else utcnow()
    seconds = int((now - as_utc(created_at)).total_seconds())
    if seconds < 60:
        return "now"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h"
    days = hours // 24
    if days < 7:
        return f"{days}d"
    if days < 28:
        return f"{days // 7}w"
    return f"{created_at.strftime('%b')} {created_at.day}"


class NotificationCenter:
    """Holds the user's notifications and their unread count.

    Opening the panel marks everything read. When that call fails the list
    stays read locally and the call is retried before the next refresh.
    Delete and clear are applied locally first and rolled back if the server
    refuses.

    Args:
        api: Notifications REST service.
        bus: Optional event bus for ``NotificationsChanged``.
    """

    def __init__(self, api: NotificationApi, bus: Optional[EventBus] = None) -> None:
        self._api = api
        self._bus = bus
        self._items: List[Notification] = []
        self._unread = 0
        self._mark_read_pending = False

    @property
    def notifications(self) -> List[Notification]:
        return list(self._items)

    @property
    def unread_count(self) -> int:
        return self._unread

    @property
    def mark_read_pending(self) -> bool:
        return self._mark_read_pending

    async def refresh(self) -> List[Notification]:
        """Overwrite the local list with the server's (authoritative).

        A queued mark-all-read is retried first; while it keeps failing the
        fetched items are shown as read.
        """
        if self._mark_read_pending:
            await self._send_mark_all_read()
        items = await self._api.list_notifications()
        if self._mark_read_pending:
            items = [_as_read(n) for n in items]
        self._items = sorted(items, key=lambda n: n.created_at, reverse=True)
        self._unread = sum(1 for n in self._items if not n.is_read)
        self._changed()
        return self.notifications

    async def on_notifications_opened(self) -> bool:
        """Zero the unread count locally and mark all read on the server.

        Returns:
            False if the server call failed; it is retried by the next
            :meth:`refresh`.
        """
        self._items = [_as_read(n) for n in self._items]
        self._unread = 0
        self._changed()
        return await self._send_mark_all_read()

    async def delete(self, notification_id: str) -> bool:
        index = next((i for i, n in enumerate(self._items) if n.id == notification_id), None)
        if index is None:
            return False
        removed = self._items.pop(index)
        unread = 0 if removed.is_read else 1
        self._unread -= unread
        self._changed()
        try:
            await self._api.delete(notification_id)
        except (ApiError, TransportError) as e:
            logger.warning("[Notifications] delete %s failed, restoring: %s", notification_id, e)
            self._items.insert(min(index, len(self._items)), removed)
            self._unread += unread
            self._changed()
            return False
        return True

    async def clear_all(self) -> bool:
        previous, self._items = self._items, []
        previous_unread, self._unread = self._unread, 0
        self._changed()
        try:
            await self._api.clear_all()
        except (ApiError, TransportError) as e:
            logger.warning("[Notifications] clear-all failed, restoring: %s", e)
            self._items = previous
            self._unread = previous_unread
            self._changed()
            return False
        return True

    def grouped(self, now: Optional[datetime] = None) -> List[Tuple[str, List[Notification]]]:
        """Notifications bucketed by age; empty buckets are left out."""
        now = as_utc(now) if now else utcnow()
        buckets: Dict[str, List[Notification]] = {label: [] for label, _ in GROUPS}
        for item in self._items:
            age = now - item.created_at
            for label, limit in GROUPS:
                if limit is None or age < limit:
                    buckets[label].append(item)
                    break
        return [(label, buckets[label]) for label, _ in GROUPS if buckets[label]]

    async def _send_mark_all_read(self) -> bool:
        try:
            await self._api.mark_all_read()
        except (ApiError, TransportError) as e:
            logger.warning("[Notifications] mark-all-read failed, will retry: %s", e)
            self._mark_read_pending = True
            return False
        self._mark_read_pending = False
        return True

    def _changed(self) -> None:
        if self._bus is not None:
            self._bus.publish(
                NotificationsChanged(unread=self.unread_count, total=len(self._items))
            )


def _as_read(notification: Notification) -> Notification:
    if notification.is_read:
        return notification
    return notification.model_copy(update={"is_read": True})
