import logging
from typing import List, Optional

from schemas import Notification, Severity
from services.store import KeyTreeStore, StoreError, join_path, server_timestamp

logger = logging.getLogger("ecowaste.notifications")


class Notifier:
    """Fire-and-forget messages under notifications/{userId}."""

    def __init__(self, store: KeyTreeStore) -> None:
        self.store = store

    async def notify(
        self,
        user_id: str,
        title: str,
        message: str,
        severity: Severity = "info",
        related_id: Optional[str] = None,
    ) -> Optional[str]:
        if not user_id:
            return None
        try:
            return await self.store.push(
                join_path("notifications", user_id),
                {
                    "userId": user_id,
                    "title": title,
                    "message": message,
                    "type": severity,
                    "relatedId": related_id,
                    "read": False,
                    "createdAt": server_timestamp(),
                },
            )
        except StoreError:
            logger.exception("Could not notify %s (%s)", user_id, title)
            return None

    async def list_for(self, user_id: str, unread_only: bool = False) -> List[Notification]:
        raw = await self.store.get(join_path("notifications", user_id)) or {}
        items = [Notification.from_store(key, value) for key, value in raw.items()]
        if unread_only:
            items = [n for n in items if not n.read]
        return sorted(items, key=lambda n: n.id, reverse=True)

    async def mark_read(self, user_id: str, notification_id: str) -> bool:
        path = join_path("notifications", user_id, notification_id)
        if await self.store.get(path) is None:
            return False
        await self.store.update(path, {"read": True})
        return True

    async def mark_all_read(self, user_id: str) -> int:
        unread = await self.list_for(user_id, unread_only=True)
        if not unread:
            return 0
        await self.store.update(
            join_path("notifications", user_id),
            {f"{n.id}/read": True for n in unread},
        )
        return len(unread)
