from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from ..core.database import Base


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    endpoint = Column(Text, unique=True, nullable=False)
    p256dh = Column(String, nullable=False)
    auth = Column(String, nullable=False)
    user_agent = Column(Text, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)

    status = Column(String, default="active", nullable=False)  # active | failed | inactive

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    devices = relationship("Device", back_populates="subscription")
    preference = relationship(
        "NotificationPreference",
        back_populates="subscription",
        uselist=False,
        cascade="all, delete-orphan",
    )

    def to_webpush_dict(self) -> dict:
        return {
            "endpoint": self.endpoint,
            "keys": {
                "p256dh": self.p256dh,
                "auth": self.auth,
            },
        }


class Device(Base):
    __tablename__ = "devices"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True, index=True)

    user_agent = Column(Text, nullable=False, default="")
    platform = Column(String, nullable=False, default="desktop")  # ios, android, desktop, tablet
    device_type = Column(String, nullable=False, default="desktop")  # mobile, desktop, tablet
    browser_name = Column(String, nullable=True)
    browser_version = Column(String, nullable=True)
    os_name = Column(String, nullable=True)
    os_version = Column(String, nullable=True)
    timezone = Column(String, nullable=True)

    # Best-effort feature detection reported by the landing page
    supports_actions = Column(Boolean, default=False)
    supports_images = Column(Boolean, default=False)
    supports_vibrate = Column(Boolean, default=False)
    supports_badge = Column(Boolean, default=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    subscription = relationship("Subscription", back_populates="devices")
