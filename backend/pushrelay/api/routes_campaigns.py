from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator
from sqlalchemy.orm import Session

from ..core import deliveries
from ..core.campaigns import CampaignNotFoundError, CampaignStateError
from ..core.database import get_db
from ..core.events import track_event
from ..core.payload_builder import NotificationAction
from ..core.services import PushServices, get_services

router = APIRouter(tags=["campaigns"])


# ---------- Pydantic schemas ----------

class CampaignCreate(BaseModel):
    name: str
    description: Optional[str] = None
    campaign_type: Optional[str] = None
    title_template: str
    body_template: Optional[str] = None
    icon_url: Optional[str] = None
    image_url: Optional[str] = None
    badge_url: Optional[str] = None
    vibrate_pattern: Optional[List[int]] = None
    tag: Optional[str] = None
    renotify: Optional[bool] = None
    require_interaction: Optional[bool] = None
    silent: Optional[bool] = None
    actions: Optional[List[NotificationAction]] = None
    click_url: Optional[str] = None
    target_segment: Optional[Dict[str, List[str]]] = None
    scheduled_at: Optional[datetime] = None
    timezone: Optional[str] = None
    ttl_seconds: Optional[int] = None
    priority: str = "normal"
    created_by: Optional[str] = None

    @field_validator("priority")
    @classmethod
    def validate_priority(cls, v: str) -> str:
        allowed = {"low", "normal", "high"}
        if v not in allowed:
            raise ValueError(f"priority must be one of {allowed}")
        return v


class CampaignOut(CampaignCreate):
    id: int
    status: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SendSummaryOut(BaseModel):
    sent: int
    failed: int
    skipped: int


class EngagementEvent(BaseModel):
    event: str

    @field_validator("event")
    @classmethod
    def validate_event(cls, v: str) -> str:
        allowed = set(deliveries.ENGAGEMENT_ORDER[1:])
        if v not in allowed:
            raise ValueError(f"event must be one of {sorted(allowed)}")
        return v


# ---------- Endpoints ----------

@router.post("/campaigns", response_model=CampaignOut, status_code=status.HTTP_201_CREATED)
def create_campaign(
    payload: CampaignCreate,
    db: Session = Depends(get_db),
    services: PushServices = Depends(get_services),
):
    fields = payload.model_dump()
    if payload.actions is not None:
        fields["actions"] = [a.model_dump(exclude_none=True) for a in payload.actions]
    return services.campaigns.create_campaign(db, **fields)


@router.get("/campaigns/{campaign_id}", response_model=CampaignOut)
def get_campaign(
    campaign_id: int,
    db: Session = Depends(get_db),
    services: PushServices = Depends(get_services),
):
    try:
        return services.campaigns.get_campaign(db, campaign_id)
    except CampaignNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.post("/campaigns/{campaign_id}/send", response_model=SendSummaryOut)
async def send_campaign(
    campaign_id: int,
    db: Session = Depends(get_db),
    services: PushServices = Depends(get_services),
):
    try:
        summary = await services.campaigns.send_campaign(db, campaign_id)
    except CampaignNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except CampaignStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return SendSummaryOut(**summary.to_dict())


@router.get("/campaigns/{campaign_id}/stats")
def campaign_stats(
    campaign_id: int,
    db: Session = Depends(get_db),
    services: PushServices = Depends(get_services),
):
    try:
        return services.campaigns.get_campaign_stats(db, campaign_id)
    except CampaignNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.post("/deliveries/{delivery_id}/events")
async def delivery_event(delivery_id: int, payload: EngagementEvent, db: Session = Depends(get_db)):
    delivery = deliveries.get_delivery(db, delivery_id)
    if delivery is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Delivery not found")

    advanced = deliveries.record_engagement(db, delivery_id, payload.event)
    if advanced:
        await track_event(
            db,
            payload.event,
            campaign_id=delivery.campaign_id,
            subscription_id=delivery.subscription_id,
            delivery_id=delivery_id,
        )

    db.refresh(delivery)
    return {"delivery_id": delivery_id, "status": delivery.status, "updated": advanced}
