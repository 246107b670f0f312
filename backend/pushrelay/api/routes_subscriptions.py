from dataclasses import asdict
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..core import subscriptions
from ..core.database import get_db
from ..core.services import PushServices, get_services

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


class SubscriptionKeys(BaseModel):
    p256dh: str
    auth: str


class SubscriptionCreate(BaseModel):
    endpoint: str
    keys: SubscriptionKeys
    user_agent: Optional[str] = None
    metadata: Optional[dict] = None
    platform: Optional[str] = None  # overrides the platform parsed from user_agent
    timezone: Optional[str] = None


class SubscriptionOut(BaseModel):
    id: int
    endpoint: str
    status: str
    created_at: datetime

    class Config:
        from_attributes = True


class HealthCheckRequest(BaseModel):
    subscription_ids: Optional[List[int]] = None  # None checks every active subscription


class HealthCheckOut(BaseModel):
    status: str
    status_code: Optional[int]
    error_message: Optional[str]
    response_time_ms: Optional[int]
    checked_at: datetime

    class Config:
        from_attributes = True


@router.post("", response_model=SubscriptionOut, status_code=status.HTTP_201_CREATED)
def register_subscription(payload: SubscriptionCreate, db: Session = Depends(get_db)):
    return subscriptions.register(
        db,
        endpoint=payload.endpoint,
        p256dh=payload.keys.p256dh,
        auth=payload.keys.auth,
        user_agent=payload.user_agent,
        metadata=payload.metadata,
        platform=payload.platform,
        timezone=payload.timezone,
    )


@router.post("/health-check")
async def run_health_check(
    payload: Optional[HealthCheckRequest] = None,
    db: Session = Depends(get_db),
    services: PushServices = Depends(get_services),
):
    if payload is None or payload.subscription_ids is None:
        result = await services.health.health_check_all_active(db)
    else:
        result = await services.health.health_check_batch(db, payload.subscription_ids)
    return asdict(result)


@router.get("/{subscription_id}/health")
def subscription_health(
    subscription_id: int,
    limit: int = 10,
    db: Session = Depends(get_db),
    services: PushServices = Depends(get_services),
):
    sub = subscriptions.get_subscription(db, subscription_id)
    if sub is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscription not found")

    history = services.health.get_health_history(db, subscription_id, limit=limit)
    return {
        "subscription_id": subscription_id,
        "status": sub.status,
        "history": [HealthCheckOut.model_validate(h) for h in history],
    }
