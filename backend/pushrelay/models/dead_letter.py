from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from ..core.database import Base


class FailedDelivery(Base):
    __tablename__ = "failed_deliveries"

    id = Column(Integer, primary_key=True, index=True)
    delivery_id = Column(Integer, ForeignKey("campaign_deliveries.id"), nullable=False, index=True)
    campaign_id = Column(Integer, nullable=True)
    subscription_id = Column(Integer, nullable=True)

    error_code = Column(String, nullable=False)
    error_category = Column(String, nullable=True, index=True)
    error_message = Column(Text, nullable=True)

    attempt = Column(Integer, nullable=False)
    max_attempts = Column(Integer, default=3)
    will_retry = Column(Boolean, default=True)
    next_retry_at = Column(DateTime, nullable=True, index=True)
    last_attempt_at = Column(DateTime, default=datetime.utcnow)

    resolved_at = Column(DateTime, nullable=True)
    resolution_reason = Column(String, nullable=True)  # recovered | max_attempts_reached | ...
    metadata_json = Column("metadata", JSON, nullable=True)
