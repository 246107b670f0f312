from datetime import datetime, time, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from ..core import preferences, subscriptions
from ..core.database import get_db

router = APIRouter(prefix="/preferences", tags=["preferences"])


# ---------- Pydantic schemas ----------

class PreferenceOut(BaseModel):
    subscription_id: int
    opt_in_status: bool
    opt_in_changed_at: Optional[datetime]
    preferred_timezones: Optional[List[str]]
    quiet_hours_enabled: bool
    quiet_hours_start: Optional[time]
    quiet_hours_end: Optional[time]
    quiet_hours_timezone: Optional[str]
    max_per_hour: Optional[int]
    max_per_day: Optional[int]
    max_per_week: Optional[int]
    dnd_until: Optional[datetime]
    dnd_reason: Optional[str]

    class Config:
        from_attributes = True


class PreferenceUpdate(BaseModel):
    opt_in_status: Optional[bool] = None
    preferred_timezones: Optional[List[str]] = None
    quiet_hours_enabled: Optional[bool] = None
    quiet_hours_start: Optional[time] = None
    quiet_hours_end: Optional[time] = None
    quiet_hours_timezone: Optional[str] = None
    max_per_hour: Optional[int] = None
    max_per_day: Optional[int] = None
    max_per_week: Optional[int] = None

    @field_validator("max_per_hour", "max_per_day", "max_per_week")
    @classmethod
    def validate_cap(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError("frequency caps must be >= 0")
        return v


class DndRequest(BaseModel):
    until: Optional[datetime] = None  # None clears do-not-disturb
    reason: Optional[str] = None


def _require_subscription(db: Session, subscription_id: int) -> None:
    if subscriptions.get_subscription(db, subscription_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")


# ---------- Endpoints ----------

@router.get("/{subscription_id}", response_model=PreferenceOut)
def get_preferences(subscription_id: int, db: Session = Depends(get_db)):
    _require_subscription(db, subscription_id)
    return preferences.get_or_create(db, subscription_id)


@router.patch("/{subscription_id}", response_model=PreferenceOut)
def update_preferences(subscription_id: int, payload: PreferenceUpdate, db: Session = Depends(get_db)):
    _require_subscription(db, subscription_id)
    return preferences.update(db, subscription_id, payload.model_dump(exclude_unset=True))


@router.post("/{subscription_id}/dnd", response_model=PreferenceOut)
def set_dnd(subscription_id: int, payload: DndRequest, db: Session = Depends(get_db)):
    _require_subscription(db, subscription_id)
    if payload.until is None:
        return preferences.clear_dnd(db, subscription_id)
    # Stored as naive UTC like every other timestamp
    until = payload.until
    if until.tzinfo is not None:
        until = until.astimezone(timezone.utc).replace(tzinfo=None)
    return preferences.set_dnd(db, subscription_id, until, payload.reason)
