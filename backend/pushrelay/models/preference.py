from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Time
from sqlalchemy.orm import relationship

from ..core.database import Base


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), unique=True, nullable=False)

    opt_in_status = Column(Boolean, default=True, nullable=False)
    opt_in_changed_at = Column(DateTime, nullable=True)

    preferred_timezones = Column(JSON, nullable=True)  # ["Europe/London", ...]

    quiet_hours_enabled = Column(Boolean, default=False)
    quiet_hours_start = Column(Time, nullable=True)  # 22:00
    quiet_hours_end = Column(Time, nullable=True)  # 08:00
    quiet_hours_timezone = Column(String, nullable=True)

    max_per_hour = Column(Integer, default=3)
    max_per_day = Column(Integer, default=10)
    max_per_week = Column(Integer, default=50)

    dnd_until = Column(DateTime, nullable=True)
    dnd_reason = Column(String, nullable=True)  # meeting, vacation, focus

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    subscription = relationship("Subscription", back_populates="preference")
