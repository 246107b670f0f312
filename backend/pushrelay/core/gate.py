"""
Per-recipient send gate: opt-in, do-not-disturb, quiet hours and frequency
caps. Evaluated right before every send; nothing is cached because caps and
preferences change while a campaign batch is in flight.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models import CampaignDelivery, NotificationPreference
from .preferences import DEFAULT_MAX_PER_DAY, DEFAULT_MAX_PER_HOUR, get_by_subscription

logger = logging.getLogger(__name__)


@dataclass
class GateDecision:
    allowed: bool
    reason: Optional[str] = None


ALLOW = GateDecision(allowed=True)


def _minute_of_day(t: time) -> int:
    return t.hour * 60 + t.minute


def in_quiet_window(current: time, start: time, end: time) -> bool:
    """``[start, end)``; a start after the end wraps past midnight."""
    now_m, start_m, end_m = _minute_of_day(current), _minute_of_day(start), _minute_of_day(end)
    if start_m > end_m:
        return now_m >= start_m or now_m < end_m
    return start_m <= now_m < end_m


def recipient_timezone(pref: NotificationPreference) -> ZoneInfo:
    name = pref.quiet_hours_timezone
    if not name and pref.preferred_timezones:
        name = pref.preferred_timezones[0]
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r} for subscription {pref.subscription_id}, using UTC")
        return ZoneInfo("UTC")


def local_time(now: datetime, tz: ZoneInfo) -> time:
    """``now`` is naive UTC, as stored everywhere else."""
    aware = now.replace(tzinfo=timezone.utc) if now.tzinfo is None else now
    return aware.astimezone(tz).time()


def count_sent_since(db: Session, subscription_id: int, since: datetime) -> int:
    return (
        db.query(func.count(CampaignDelivery.id))
        .filter(
            CampaignDelivery.subscription_id == subscription_id,
            CampaignDelivery.sent_at.is_not(None),
            CampaignDelivery.sent_at >= since,
        )
        .scalar()
        or 0
    )


class FrequencyGate:
    def __init__(
        self,
        default_max_per_hour: int = DEFAULT_MAX_PER_HOUR,
        default_max_per_day: int = DEFAULT_MAX_PER_DAY,
    ):
        self.default_max_per_hour = default_max_per_hour
        self.default_max_per_day = default_max_per_day

    def evaluate(self, db: Session, subscription_id: int, now: Optional[datetime] = None) -> GateDecision:
        now = now or datetime.utcnow()
        pref = get_by_subscription(db, subscription_id)

        max_per_hour = self.default_max_per_hour
        max_per_day = self.default_max_per_day

        if pref is not None:
            if not pref.opt_in_status:
                return GateDecision(False, "opted_out")

            if pref.dnd_until and pref.dnd_until > now:
                return GateDecision(False, "do_not_disturb")

            if pref.quiet_hours_enabled and pref.quiet_hours_start and pref.quiet_hours_end:
                current = local_time(now, recipient_timezone(pref))
                if in_quiet_window(current, pref.quiet_hours_start, pref.quiet_hours_end):
                    return GateDecision(False, "quiet_hours")

            if pref.max_per_hour is not None:
                max_per_hour = pref.max_per_hour
            if pref.max_per_day is not None:
                max_per_day = pref.max_per_day

        if count_sent_since(db, subscription_id, now - timedelta(hours=1)) >= max_per_hour:
            return GateDecision(False, "hourly_cap")
        if count_sent_since(db, subscription_id, now - timedelta(hours=24)) >= max_per_day:
            return GateDecision(False, "daily_cap")

        return ALLOW

    def can_send(self, db: Session, subscription_id: int, now: Optional[datetime] = None) -> bool:
        decision = self.evaluate(db, subscription_id, now)
        if not decision.allowed:
            logger.debug(f"Send to subscription {subscription_id} denied: {decision.reason}")
        return decision.allowed
