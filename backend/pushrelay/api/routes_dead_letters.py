from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..core.database import get_db
from ..core.services import PushServices, get_services
from ..models import FailedDelivery

router = APIRouter(prefix="/dead-letters", tags=["dead-letters"])


class FailedDeliveryOut(BaseModel):
    id: int
    delivery_id: int
    campaign_id: Optional[int]
    subscription_id: Optional[int]
    error_code: str
    error_category: Optional[str]
    error_message: Optional[str]
    attempt: int
    max_attempts: int
    will_retry: bool
    next_retry_at: Optional[datetime]
    last_attempt_at: Optional[datetime]
    resolved_at: Optional[datetime]
    resolution_reason: Optional[str]

    class Config:
        from_attributes = True


class RecoveryResultOut(BaseModel):
    recovered: int
    permanently_failed: int
    still_pending: int


@router.get("", response_model=List[FailedDeliveryOut])
def list_dead_letters(
    category: Optional[str] = None,
    campaign_id: Optional[int] = None,
    subscription_id: Optional[int] = None,
    unresolved: bool = False,
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
    services: PushServices = Depends(get_services),
):
    store = services.dead_letters
    if category:
        return store.get_by_category(db, category, limit=limit)
    if campaign_id is not None:
        return store.get_by_campaign(db, campaign_id)[:limit]
    if subscription_id is not None:
        return store.get_by_subscription(db, subscription_id)[:limit]

    q = db.query(FailedDelivery)
    if unresolved:
        q = q.filter(FailedDelivery.resolved_at.is_(None))
    return q.order_by(FailedDelivery.last_attempt_at.desc()).limit(limit).all()


@router.get("/stats")
def dead_letter_stats(db: Session = Depends(get_db), services: PushServices = Depends(get_services)):
    return services.dead_letters.get_stats(db)


@router.post("/process", response_model=RecoveryResultOut)
async def process_dead_letters(
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
    services: PushServices = Depends(get_services),
):
    result = await services.dead_letters.process_retry_queue(db, services.dispatcher, limit=limit)
    return RecoveryResultOut(
        recovered=result.recovered,
        permanently_failed=result.permanently_failed,
        still_pending=result.still_pending,
    )


@router.post("/cleanup")
def cleanup_dead_letters(
    days_to_keep: Optional[int] = Query(None, ge=0),
    db: Session = Depends(get_db),
    services: PushServices = Depends(get_services),
):
    days = days_to_keep if days_to_keep is not None else services.settings.dead_letter_retention_days
    return {"deleted": services.dead_letters.cleanup(db, days_to_keep=days)}
