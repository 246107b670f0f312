from __future__ import annotations

from datetime import datetime, time
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..models import NotificationPreference

DEFAULT_MAX_PER_HOUR = 3
DEFAULT_MAX_PER_DAY = 10
DEFAULT_MAX_PER_WEEK = 50

UPDATABLE_FIELDS = {
    "opt_in_status",
    "preferred_timezones",
    "quiet_hours_enabled",
    "quiet_hours_start",
    "quiet_hours_end",
    "quiet_hours_timezone",
    "max_per_hour",
    "max_per_day",
    "max_per_week",
    "dnd_until",
    "dnd_reason",
}


def get_by_subscription(db: Session, subscription_id: int) -> Optional[NotificationPreference]:
    return (
        db.query(NotificationPreference)
        .filter(NotificationPreference.subscription_id == subscription_id)
        .first()
    )


def get_or_create(db: Session, subscription_id: int) -> NotificationPreference:
    """Preferences are created lazily, opted in with the default caps."""
    pref = get_by_subscription(db, subscription_id)
    if pref:
        return pref

    pref = NotificationPreference(
        subscription_id=subscription_id,
        opt_in_status=True,
        max_per_hour=DEFAULT_MAX_PER_HOUR,
        max_per_day=DEFAULT_MAX_PER_DAY,
        max_per_week=DEFAULT_MAX_PER_WEEK,
    )
    db.add(pref)
    db.commit()
    db.refresh(pref)
    return pref


def update(db: Session, subscription_id: int, changes: Dict[str, Any]) -> NotificationPreference:
    pref = get_or_create(db, subscription_id)
    now = datetime.utcnow()

    for key, value in changes.items():
        if key not in UPDATABLE_FIELDS:
            raise ValueError(f"Unknown preference field {key!r}")
        if key == "opt_in_status" and value != pref.opt_in_status:
            pref.opt_in_changed_at = now
        setattr(pref, key, value)

    pref.updated_at = now
    db.commit()
    db.refresh(pref)
    return pref


def set_dnd(db: Session, subscription_id: int, until: datetime, reason: Optional[str] = None):
    return update(db, subscription_id, {"dnd_until": until, "dnd_reason": reason})


def clear_dnd(db: Session, subscription_id: int):
    return update(db, subscription_id, {"dnd_until": None, "dnd_reason": None})


def toggle_opt_in(db: Session, subscription_id: int, opt_in: bool):
    return update(db, subscription_id, {"opt_in_status": opt_in})


def update_quiet_hours(
    db: Session,
    subscription_id: int,
    enabled: bool,
    start: Optional[time],
    end: Optional[time],
    timezone: Optional[str] = None,
):
    return update(
        db,
        subscription_id,
        {
            "quiet_hours_enabled": enabled,
            "quiet_hours_start": start,
            "quiet_hours_end": end,
            "quiet_hours_timezone": timezone,
        },
    )


def update_frequency_caps(
    db: Session,
    subscription_id: int,
    max_per_hour: Optional[int] = None,
    max_per_day: Optional[int] = None,
    max_per_week: Optional[int] = None,
):
    return update(
        db,
        subscription_id,
        {"max_per_hour": max_per_hour, "max_per_day": max_per_day, "max_per_week": max_per_week},
    )
