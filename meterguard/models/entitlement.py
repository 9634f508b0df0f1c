"""
meterguard/models/entitlement.py

Entitlement: the capability package currently granted to a user.

A user points at one entitlement via ``app_users.entitlement_id``. The same
row is reused across a subscription's renewal cycles and rewritten in place
on tier changes. Entitlements are never deleted.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

from meterguard.core.timeutils import ensure_utc


class Entitlement(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    price: Decimal
    plan_id: Optional[str] = None
    is_limited: bool
    plan_limit: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @classmethod
    def from_row(cls, row) -> "Entitlement":
        return cls.model_validate(dict(row._mapping))
