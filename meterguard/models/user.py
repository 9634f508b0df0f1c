from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator

from meterguard.core.timeutils import ensure_utc


class UserRole(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


class User(BaseModel):
    """
    User identity plus capability-consumption state.

    ``free_trial`` and ``user_limit`` are never negative. ``user_limit`` only
    means something while ``entitlement_id`` is set.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: Optional[str] = None
    phone: Optional[str] = None
    role: UserRole = UserRole.USER
    free_trial: int = 0
    entitlement_id: Optional[str] = None
    user_limit: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @classmethod
    def from_row(cls, row) -> "User":
        return cls.model_validate(dict(row._mapping))
