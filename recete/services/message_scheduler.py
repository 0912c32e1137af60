"""
Message Scheduler
Persists post-delivery message tasks and enqueues delayed send jobs
"""
import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from supabase import Client

from recete.models.prevention import TaskStatus, TaskType
from recete.services.cache_service import CacheService

logger = logging.getLogger(__name__)

MESSAGE_QUEUE = "queue:scheduled_messages"

# Offsets from the delivery timestamp
ORDER_MESSAGE_PLAN = [
    (TaskType.WELCOME, None),
    (TaskType.CHECKIN_T3, timedelta(days=3)),
    (TaskType.CHECKIN_T14, timedelta(days=14)),
]


def parse_timestamp(value) -> datetime:
    """Parse an ISO timestamp or date; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip().replace("Z", "+00:00")
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class MessageScheduler:
    """Writes scheduled_tasks rows and the Redis delayed-job queue"""

    def __init__(self, db: Client, cache: CacheService):
        self.db = db
        self.cache = cache

    async def schedule_order_messages(
        self,
        order_id: str,
        merchant_id: str,
        user_id: str,
        delivery_date: str,
        now: Optional[datetime] = None
    ) -> List[str]:
        """
        Schedule welcome (immediately), T+3 and T+14 check-ins for a delivered order

        Callers must enforce the consent gate before calling this.

        Returns:
            Ids of the created scheduled_tasks rows
        """
        now = now or datetime.now(timezone.utc)
        delivered_at = parse_timestamp(delivery_date)

        rows = []
        for task_type, offset in ORDER_MESSAGE_PLAN:
            execute_at = now if offset is None else delivered_at + offset
            rows.append({
                "merchant_id": merchant_id,
                "user_id": user_id,
                "order_id": order_id,
                "task_type": task_type.value,
                "execute_at": execute_at.isoformat(),
                "status": TaskStatus.PENDING.value,
            })

        response = await asyncio.to_thread(lambda: self.db.table("scheduled_tasks").insert(rows).execute())
        created = response.data or []

        for task in created:
            await self.cache.enqueue_delayed(
                MESSAGE_QUEUE,
                {
                    "task_id": task.get("id"),
                    "task_type": task.get("task_type"),
                    "merchant_id": merchant_id,
                    "user_id": user_id,
                    "order_id": order_id,
                },
                parse_timestamp(task.get("execute_at"))
            )

        logger.info(f"📅 Scheduled {len(created)} messages for order {order_id}")
        return [task.get("id") for task in created]

    async def cancel_order_messages(self, order_id: str) -> int:
        """Cancel pending tasks of an order and drop their queued jobs."""
        response = await asyncio.to_thread(
            lambda: self.db.table("scheduled_tasks")
            .update({"status": TaskStatus.CANCELLED.value})
            .eq("order_id", order_id)
            .eq("status", TaskStatus.PENDING.value)
            .execute()
        )
        cancelled = response.data or []
        await self.cache.remove_jobs(MESSAGE_QUEUE, lambda job: job.get("order_id") == order_id)

        if cancelled:
            logger.info(f"🛑 Cancelled {len(cancelled)} pending messages for order {order_id}")
        return len(cancelled)

    async def cancel_user_messages(self, user_id: str) -> int:
        """Cancel every pending task of a user (opt-out)."""
        response = await asyncio.to_thread(
            lambda: self.db.table("scheduled_tasks")
            .update({"status": TaskStatus.CANCELLED.value})
            .eq("user_id", user_id)
            .eq("status", TaskStatus.PENDING.value)
            .execute()
        )
        await self.cache.remove_jobs(MESSAGE_QUEUE, lambda job: job.get("user_id") == user_id)
        return len(response.data or [])

    async def record_upsell_sent(self, merchant_id: str, user_id: str, order_id: str) -> None:
        """Completed upsell task; also the once-per-order guard for upsell eligibility."""
        now = datetime.now(timezone.utc).isoformat()
        await asyncio.to_thread(
            lambda: self.db.table("scheduled_tasks").insert({
                "merchant_id": merchant_id,
                "user_id": user_id,
                "order_id": order_id,
                "task_type": TaskType.UPSELL.value,
                "execute_at": now,
                "status": TaskStatus.COMPLETED.value,
            }).execute()
        )
