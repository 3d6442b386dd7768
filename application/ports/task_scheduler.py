"""
Background task port: lets application services defer work without importing Celery.
"""
from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class FanoutScheduler(Protocol):
    def schedule_fanout_retry(self, purchase_id: int, action: str, *, countdown: int) -> None: ...
