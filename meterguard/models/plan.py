"""
meterguard/models/plan.py

Plan catalog model.

ORDER plans are one-time top-ups granting ``limit_number`` additional uses.
SUBSCRIPTION plans recur every ``intervals`` x ``interval_type`` and reset the
user's limit to ``limit_number`` on each successful charge.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

from meterguard.core.timeutils import ensure_utc


class PlanType(str, Enum):
    ORDER = "ORDER"
    SUBSCRIPTION = "SUBSCRIPTION"


class IntervalType(str, Enum):
    MONTH = "MONTH"
    YEAR = "YEAR"


class Plan(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: Optional[str] = None
    plan_type: PlanType
    amount: Decimal
    recurring_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    currency: str = "INR"
    is_limited: bool = True
    limit_number: Optional[int] = None
    intervals: Optional[int] = None
    interval_type: Optional[IntervalType] = None
    max_cycles: Optional[int] = None
    gateway_plan_id: Optional[str] = None
    gateway_synced: bool = False
    status: str = "ACTIVE"
    created_at: Optional[datetime] = None

    @field_validator("created_at")
    @classmethod
    def normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @property
    def has_interval_data(self) -> bool:
        return bool(self.intervals and self.interval_type)

    @classmethod
    def from_row(cls, row) -> "Plan":
        return cls.model_validate(dict(row._mapping))
