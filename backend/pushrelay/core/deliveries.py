"""
Delivery rows: forward-only status changes and the per-delivery lease.

Every write is a conditional UPDATE on the current status (or lease holder),
so the campaign orchestrator and the recovery loop cannot clobber each other.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..models import CampaignDelivery

logger = logging.getLogger(__name__)

PENDING = "pending"
SENT = "sent"
FAILED = "failed"
DELIVERED = "delivered"
OPENED = "opened"
CLICKED = "clicked"

ENGAGEMENT_ORDER = (SENT, DELIVERED, OPENED, CLICKED)

_TIMESTAMP_COLUMNS = {
    SENT: "sent_at",
    FAILED: "failed_at",
    DELIVERED: "delivered_at",
    OPENED: "opened_at",
    CLICKED: "clicked_at",
}


def get_delivery(db: Session, delivery_id: int) -> Optional[CampaignDelivery]:
    return db.query(CampaignDelivery).filter(CampaignDelivery.id == delivery_id).first()


def transition(
    db: Session,
    delivery_id: int,
    from_statuses: Iterable[str],
    to_status: str,
    now: Optional[datetime] = None,
    **values,
) -> bool:
    """Compare-and-swap status update. Returns True if this caller won."""
    now = now or datetime.utcnow()
    changes = {CampaignDelivery.status: to_status}
    ts_column = _TIMESTAMP_COLUMNS.get(to_status)
    if ts_column:
        changes[getattr(CampaignDelivery, ts_column)] = now
    for key, value in values.items():
        changes[getattr(CampaignDelivery, key)] = value

    updated = (
        db.query(CampaignDelivery)
        .filter(
            CampaignDelivery.id == delivery_id,
            CampaignDelivery.status.in_(list(from_statuses)),
        )
        .update(changes, synchronize_session="fetch")
    )
    db.commit()
    return bool(updated)


def mark_sent(db: Session, delivery_id: int, now: Optional[datetime] = None) -> bool:
    return transition(db, delivery_id, [PENDING], SENT, now=now)


def mark_failed(
    db: Session,
    delivery_id: int,
    error_code: Optional[str],
    error_message: Optional[str],
    now: Optional[datetime] = None,
) -> bool:
    return transition(
        db,
        delivery_id,
        [PENDING],
        FAILED,
        now=now,
        error_code=error_code,
        error_message=error_message,
    )


def mark_recovered(db: Session, delivery_id: int, now: Optional[datetime] = None) -> bool:
    """A dead-lettered delivery finally went out."""
    return transition(
        db,
        delivery_id,
        [PENDING, FAILED],
        SENT,
        now=now,
        retry_count=CampaignDelivery.retry_count + 1,
    )


def record_engagement(db: Session, delivery_id: int, status: str, now: Optional[datetime] = None) -> bool:
    """Advance sent -> delivered -> opened -> clicked; never backwards."""
    if status not in ENGAGEMENT_ORDER[1:]:
        raise ValueError(f"Unknown engagement status {status!r}")
    earlier = ENGAGEMENT_ORDER[: ENGAGEMENT_ORDER.index(status)]
    return transition(db, delivery_id, earlier, status, now=now)


def acquire_lease(
    db: Session,
    delivery_id: int,
    owner: str,
    lease_seconds: int,
    now: Optional[datetime] = None,
) -> bool:
    now = now or datetime.utcnow()
    threshold = now - timedelta(seconds=lease_seconds)
    updated = (
        db.query(CampaignDelivery)
        .filter(
            CampaignDelivery.id == delivery_id,
            or_(
                CampaignDelivery.locked_at.is_(None),
                CampaignDelivery.locked_at < threshold,
                CampaignDelivery.locked_by == owner,
            ),
        )
        .update(
            {CampaignDelivery.locked_at: now, CampaignDelivery.locked_by: owner},
            synchronize_session="fetch",
        )
    )
    db.commit()
    if not updated:
        logger.debug(f"Delivery {delivery_id} is leased by another worker")
    return bool(updated)


def release_lease(db: Session, delivery_id: int, owner: str) -> None:
    db.query(CampaignDelivery).filter(
        CampaignDelivery.id == delivery_id,
        CampaignDelivery.locked_by == owner,
    ).update(
        {CampaignDelivery.locked_at: None, CampaignDelivery.locked_by: None},
        synchronize_session="fetch",
    )
    db.commit()
