"""
Purchase domain events.

Dataclass events record purchase lifecycle facts for downstream handling
(logging, fan-out bookkeeping). Domain remains free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
import uuid


@dataclass
class PurchaseEvent:
    purchase_id: int
    buyer_id: int
    course_id: int
    provider: str
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class PurchaseCompleted(PurchaseEvent):
    payment_ref: Optional[str] = None
    amount: str = ""


@dataclass
class PurchaseFailed(PurchaseEvent):
    reason: Optional[str] = None


@dataclass
class PurchaseRefunded(PurchaseEvent):
    refund_ref: str = ""
    amount: str = ""
