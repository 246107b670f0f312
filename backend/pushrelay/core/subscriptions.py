from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from ..models import Subscription
from . import devices

logger = logging.getLogger(__name__)

ACTIVE = "active"
FAILED = "failed"
INACTIVE = "inactive"

# Demotions only; getting back to active requires re-subscribing
_ALLOWED_DEMOTIONS = {
    ACTIVE: {FAILED, INACTIVE},
    FAILED: {INACTIVE},
    INACTIVE: set(),
}


def get_subscription(db: Session, subscription_id: int) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.id == subscription_id).first()


def get_active(db: Session) -> List[Subscription]:
    return db.query(Subscription).filter(Subscription.status == ACTIVE).all()


def demote(db: Session, subscription_id: int, to_status: str) -> bool:
    """
    Move a subscription down the active -> failed -> inactive ladder.

    Conditional on the current status so concurrent writers cannot move a
    subscription backwards. Returns True when a row changed.
    """
    allowed_from = [s for s, targets in _ALLOWED_DEMOTIONS.items() if to_status in targets]
    if not allowed_from:
        raise ValueError(f"Cannot demote a subscription to {to_status!r}")

    updated = (
        db.query(Subscription)
        .filter(Subscription.id == subscription_id, Subscription.status.in_(allowed_from))
        .update(
            {Subscription.status: to_status, Subscription.updated_at: datetime.utcnow()},
            synchronize_session="fetch",
        )
    )
    db.commit()
    if updated:
        logger.info(f"Subscription {subscription_id} demoted to {to_status}")
    return bool(updated)


def register(
    db: Session,
    endpoint: str,
    p256dh: str,
    auth: str,
    user_agent: Optional[str] = None,
    metadata: Optional[dict] = None,
    platform: Optional[str] = None,
    timezone: Optional[str] = None,
) -> Subscription:
    """
    Create or refresh the subscription for an endpoint (one row per endpoint).

    A user agent also creates or refreshes the subscription's device profile,
    which decides how payloads are adapted.
    """
    sub = db.query(Subscription).filter(Subscription.endpoint == endpoint).first()
    if sub is None:
        sub = Subscription(
            endpoint=endpoint,
            p256dh=p256dh,
            auth=auth,
            user_agent=user_agent,
            metadata_json=metadata,
            status=ACTIVE,
        )
        db.add(sub)
    else:
        # Explicit re-subscription is the only way back to active
        sub.p256dh = p256dh
        sub.auth = auth
        sub.user_agent = user_agent or sub.user_agent
        if metadata is not None:
            sub.metadata_json = metadata
        sub.status = ACTIVE
        sub.updated_at = datetime.utcnow()

    db.commit()
    db.refresh(sub)

    if user_agent:
        devices.register_device(db, sub.id, user_agent, platform=platform, timezone=timezone)
    return sub
