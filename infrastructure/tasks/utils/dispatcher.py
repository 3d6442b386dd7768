"""Small dispatching helpers to decouple Celery from callers."""
from __future__ import annotations

from ..config.celery import celery_app


FANOUT_RETRY_TASK = "purchases.retry_fanout"


class TaskDispatcher:
    """Internal facade used by application layer to schedule tasks.

    Implements application.ports.task_scheduler.FanoutScheduler.
    """

    def schedule_fanout_retry(self, purchase_id: int, action: str, *, countdown: int) -> None:
        """Defer an enrollment grant/revoke that failed inline."""
        celery_app.send_task(
            FANOUT_RETRY_TASK,
            kwargs={"purchase_id": purchase_id, "action": action},
            countdown=countdown,
        )
