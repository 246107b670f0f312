from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from ..core.database import Base


class SubscriptionHealthCheck(Base):
    __tablename__ = "subscription_health_checks"

    id = Column(Integer, primary_key=True, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True, index=True)

    status = Column(String, nullable=False)  # healthy | unhealthy | expired | unknown
    status_code = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    response_time_ms = Column(Integer, nullable=True)

    checked_at = Column(DateTime, default=datetime.utcnow, index=True)
