"""
meterguard/models/subscription.py

UserSubscription: one purchase attempt, or one recurring subscription's
billing record.

Created PENDING at initiation; every later transition is driven by gateway
webhooks. FAILED, CANCELLED and EXPIRED are terminal.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from meterguard.core.timeutils import ensure_utc


class SubscriptionStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    PAUSED = "PAUSED"
    EXPIRED = "EXPIRED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


# At most one of these per (user_id, plan_id). PAUSED counts: the gateway
# can resume and charge it, moving it back to ACTIVE.
OPEN_STATUSES = (SubscriptionStatus.PENDING, SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED)

TERMINAL_STATUSES = (
    SubscriptionStatus.FAILED,
    SubscriptionStatus.CANCELLED,
    SubscriptionStatus.EXPIRED,
)


class UserSubscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    plan_id: str
    status: SubscriptionStatus = SubscriptionStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    gateway_order_id: Optional[str] = None
    gateway_subscription_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None
    usage_count: int = 0
    amount_paid: Decimal = Decimal("0")
    currency: str = "INR"
    started_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    cycles_completed: int = 0
    payment_metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("started_at", "expires_at", "created_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @classmethod
    def from_row(cls, row) -> "UserSubscription":
        return cls.model_validate(dict(row._mapping))
