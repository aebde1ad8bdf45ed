from __future__ import annotations

import logging

from ..models.consumption import ConsumptionRecord
from ..notifications.queue import AsyncNotificationQueue

logger = logging.getLogger(__name__)


class ChangeNotifier:
    """
    Publishes committed account changes to connected clients.

    Called only after the store transaction has committed; a publish
    failure is logged and does not undo the change.
    """

    def __init__(self, queue: AsyncNotificationQueue) -> None:
        self._queue = queue

    async def balance_changed(self, user_id: str, balance: int, reason: str) -> None:
        await self._publish(
            {
                "type": "balance_changed",
                "user_id": user_id,
                "payload": {"balance": balance, "reason": reason},
            }
        )

    async def consumption_created(self, record: ConsumptionRecord) -> None:
        await self._publish(
            {
                "type": "consumption_created",
                "user_id": record.user_id,
                "payload": {
                    "record_id": record.id,
                    "created_at": record.created_at.isoformat(),
                },
            }
        )

    async def _publish(self, message: dict) -> None:
        try:
            await self._queue.enqueue(message)
        except Exception:
            logger.exception(
                "Change notification dropped",
                extra={"type": message["type"], "user_id": message["user_id"]},
            )
