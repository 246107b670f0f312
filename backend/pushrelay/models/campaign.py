from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from ..core.database import Base


class Campaign(Base):
    __tablename__ = "campaigns"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)

    status = Column(String, default="draft", nullable=False)  # draft | scheduled | sending | completed | paused
    campaign_type = Column(String, nullable=True)  # broadcast, segmented, transactional

    # Content
    title_template = Column(String, nullable=False)
    body_template = Column(Text, nullable=True)
    icon_url = Column(String, nullable=True)
    image_url = Column(String, nullable=True)
    badge_url = Column(String, nullable=True)
    vibrate_pattern = Column(JSON, nullable=True)  # [200, 100, 200]
    tag = Column(String, nullable=True)
    renotify = Column(Boolean, nullable=True)
    require_interaction = Column(Boolean, nullable=True)
    silent = Column(Boolean, nullable=True)
    actions = Column(JSON, nullable=True)  # [{"action": "open", "title": "Open"}]
    click_url = Column(String, nullable=True)

    # Targeting: {"platforms": ["ios"], "browsers": ["chrome"]}
    target_segment = Column(JSON, nullable=True)

    scheduled_at = Column(DateTime, nullable=True)
    timezone = Column(String, nullable=True)

    ttl_seconds = Column(Integer, nullable=True)
    priority = Column(String, default="normal")  # low, normal, high

    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    deleted_at = Column(DateTime, nullable=True)

    deliveries = relationship("CampaignDelivery", back_populates="campaign")


class CampaignDelivery(Base):
    __tablename__ = "campaign_deliveries"

    id = Column(Integer, primary_key=True, index=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id"), nullable=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True, index=True)
    device_id = Column(Integer, ForeignKey("devices.id"), nullable=True)

    # pending -> sent | failed, then delivered -> opened -> clicked
    status = Column(String, default="pending", nullable=False, index=True)

    title = Column(String, nullable=True)
    body = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    sent_at = Column(DateTime, nullable=True, index=True)
    delivered_at = Column(DateTime, nullable=True)
    opened_at = Column(DateTime, nullable=True)
    clicked_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)

    error_code = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, default=0, nullable=False)

    # Single-writer lease shared by the orchestrator and the recovery loop
    locked_at = Column(DateTime, nullable=True)
    locked_by = Column(String, nullable=True)

    campaign = relationship("Campaign", back_populates="deliveries")
