from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models import Campaign, CampaignDelivery, Device, Subscription
from . import deliveries, subscriptions
from .dispatcher import DeliveryDispatcher
from .events import track_event
from .gate import FrequencyGate
from .retry import ErrorCode

logger = logging.getLogger(__name__)

SENDABLE_STATUSES = ("draft", "scheduled")

CAMPAIGN_FIELDS = {
    "name",
    "description",
    "campaign_type",
    "title_template",
    "body_template",
    "icon_url",
    "image_url",
    "badge_url",
    "vibrate_pattern",
    "tag",
    "renotify",
    "require_interaction",
    "silent",
    "actions",
    "click_url",
    "target_segment",
    "scheduled_at",
    "timezone",
    "ttl_seconds",
    "priority",
    "created_by",
}


class CampaignError(Exception):
    pass


class CampaignNotFoundError(CampaignError):
    pass


class CampaignStateError(CampaignError):
    pass


@dataclass
class SendSummary:
    sent: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def build_campaign_payload(campaign: Campaign) -> Dict[str, Any]:
    """Raw notification payload for a campaign; adapted per device later."""
    data: Dict[str, Any] = {"campaign_id": campaign.id, "priority": campaign.priority or "normal"}
    if campaign.click_url:
        data["url"] = campaign.click_url

    payload = {
        "title": campaign.title_template,
        "body": campaign.body_template,
        "icon": campaign.icon_url,
        "image": campaign.image_url,
        "badge": campaign.badge_url,
        "vibrate": campaign.vibrate_pattern,
        "tag": campaign.tag,
        "renotify": campaign.renotify,
        "requireInteraction": campaign.require_interaction,
        "silent": campaign.silent,
        "actions": campaign.actions,
        "data": data,
        "ttl": campaign.ttl_seconds,
    }
    return {k: v for k, v in payload.items() if v is not None}


def _lower(values) -> List[str]:
    return [str(v).lower() for v in (values or [])]


def device_matches_segment(device: Optional[Device], segment: Optional[Dict[str, Any]]) -> bool:
    platforms = _lower((segment or {}).get("platforms"))
    browsers = _lower((segment or {}).get("browsers"))
    if not platforms and not browsers:
        return True
    if device is None:
        return False
    if platforms and (device.platform or "").lower() not in platforms:
        return False
    if browsers and (device.browser_name or "").lower() not in browsers:
        return False
    return True


def latest_device(db: Session, subscription_id: int) -> Optional[Device]:
    return (
        db.query(Device)
        .filter(Device.subscription_id == subscription_id)
        .order_by(Device.updated_at.desc())
        .first()
    )


class CampaignOrchestrator:
    def __init__(
        self,
        dispatcher: DeliveryDispatcher,
        gate: Optional[FrequencyGate] = None,
        concurrency: int = 10,
        lease_seconds: int = 120,
        worker_id: Optional[str] = None,
    ):
        self.dispatcher = dispatcher
        self.gate = gate or FrequencyGate()
        self.concurrency = max(1, concurrency)
        self.lease_seconds = lease_seconds
        self.worker_id = worker_id or f"campaign-{uuid.uuid4().hex[:8]}"

    def create_campaign(self, db: Session, **fields) -> Campaign:
        unknown = set(fields) - CAMPAIGN_FIELDS
        if unknown:
            raise ValueError(f"Unknown campaign fields: {sorted(unknown)}")
        campaign = Campaign(status="draft", **fields)
        db.add(campaign)
        db.commit()
        db.refresh(campaign)
        return campaign

    def get_campaign(self, db: Session, campaign_id: int) -> Campaign:
        campaign = db.query(Campaign).filter(Campaign.id == campaign_id).first()
        if campaign is None or campaign.deleted_at is not None:
            raise CampaignNotFoundError(f"Campaign {campaign_id} not found")
        return campaign

    def get_target_subscriptions(self, db: Session, campaign: Campaign) -> List[Subscription]:
        targets = []
        for sub in subscriptions.get_active(db):
            if device_matches_segment(latest_device(db, sub.id), campaign.target_segment):
                targets.append(sub)
        return targets

    async def _record_crash(
        self, db: Session, campaign: Campaign, sub: Subscription, delivery_id: int, exc: Exception
    ) -> None:
        """Close out a delivery whose send raised instead of returning a result."""
        db.rollback()
        logger.error(f"Campaign {campaign.id}: send to subscription {sub.id} crashed: {exc}")
        deliveries.mark_failed(db, delivery_id, ErrorCode.UNKNOWN.value, str(exc))
        if self.dispatcher.dead_letters is not None:
            self.dispatcher.dead_letters.record_failure(
                db,
                delivery_id,
                exc,
                error_code=ErrorCode.UNKNOWN,
                campaign_id=campaign.id,
                subscription_id=sub.id,
            )
        await track_event(
            db, "failed", campaign_id=campaign.id, subscription_id=sub.id,
            delivery_id=delivery_id, payload={"error": str(exc)},
        )

    async def _send_one(self, db: Session, campaign: Campaign, sub: Subscription, payload: Dict[str, Any]) -> str:
        decision = self.gate.evaluate(db, sub.id)
        if not decision.allowed:
            logger.debug(f"Campaign {campaign.id}: skipping subscription {sub.id} ({decision.reason})")
            return "skipped"

        device = latest_device(db, sub.id)
        delivery = CampaignDelivery(
            campaign_id=campaign.id,
            subscription_id=sub.id,
            device_id=device.id if device else None,
            status=deliveries.PENDING,
            title=payload.get("title"),
            body=payload.get("body"),
            payload=payload,
            locked_at=datetime.utcnow(),
            locked_by=self.worker_id,
        )
        db.add(delivery)
        db.commit()
        delivery_id = delivery.id

        try:
            try:
                result = await self.dispatcher.send_tracked(db, delivery_id, sub.id, payload, campaign_id=campaign.id)
            except Exception as exc:
                await self._record_crash(db, campaign, sub, delivery_id, exc)
                return "failed"

            if result.success:
                deliveries.mark_sent(db, delivery_id)
                await track_event(
                    db, "sent", campaign_id=campaign.id, subscription_id=sub.id,
                    delivery_id=delivery_id, title=payload.get("title"),
                )
                return "sent"

            deliveries.mark_failed(
                db,
                delivery_id,
                result.error_code.value if result.error_code else None,
                result.error,
            )
            await track_event(
                db, "failed", campaign_id=campaign.id, subscription_id=sub.id,
                delivery_id=delivery_id, payload={"error": result.error},
            )
            return "failed"
        finally:
            deliveries.release_lease(db, delivery_id, self.worker_id)

    async def send_campaign(self, db: Session, campaign_id: int) -> SendSummary:
        """
        Send a draft or scheduled campaign to its whole audience.

        Runs to completion in one call. If the process dies midway the
        campaign is left in ``sending``.
        """
        campaign = self.get_campaign(db, campaign_id)
        if campaign.status not in SENDABLE_STATUSES:
            raise CampaignStateError(f"Campaign {campaign_id} is {campaign.status}, cannot send")

        campaign.status = "sending"
        campaign.updated_at = datetime.utcnow()
        db.commit()

        targets = self.get_target_subscriptions(db, campaign)
        payload = build_campaign_payload(campaign)
        logger.info(f"Campaign {campaign_id}: sending to {len(targets)} subscriptions")

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(sub: Subscription) -> str:
            async with semaphore:
                return await self._send_one(db, campaign, sub, payload)

        outcomes = await asyncio.gather(*(_bounded(sub) for sub in targets), return_exceptions=True)

        summary = SendSummary()
        for sub, outcome in zip(targets, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    f"Campaign {campaign_id}: send to subscription {sub.id} raised: {outcome}",
                    extra={"campaign_id": campaign_id, "subscription_id": sub.id},
                )
                summary.failed += 1
            elif outcome == "sent":
                summary.sent += 1
            elif outcome == "failed":
                summary.failed += 1
            else:
                summary.skipped += 1

        campaign.status = "completed"
        campaign.updated_at = datetime.utcnow()
        db.commit()

        logger.info(
            f"Campaign {campaign_id} completed: {summary.sent} sent, {summary.failed} failed, {summary.skipped} skipped",
            extra={"campaign_id": campaign_id},
        )
        return summary

    def get_campaign_stats(self, db: Session, campaign_id: int) -> Dict[str, Any]:
        self.get_campaign(db, campaign_id)
        counts = dict(
            db.query(CampaignDelivery.status, func.count(CampaignDelivery.id))
            .filter(CampaignDelivery.campaign_id == campaign_id)
            .group_by(CampaignDelivery.status)
            .all()
        )
        stats = {status: counts.get(status, 0) for status in (
            deliveries.PENDING,
            deliveries.SENT,
            deliveries.FAILED,
            deliveries.DELIVERED,
            deliveries.OPENED,
            deliveries.CLICKED,
        )}
        stats["total"] = sum(counts.values())
        return stats
