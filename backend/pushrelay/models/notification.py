from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Integer, String

from ..core.database import Base


class DeliveryEvent(Base):
    __tablename__ = "delivery_events"

    id = Column(Integer, primary_key=True, index=True)
    event_type = Column(String, nullable=False)  # sent | failed | delivered | opened | clicked
    campaign_id = Column(Integer, nullable=True, index=True)
    subscription_id = Column(Integer, nullable=True)
    delivery_id = Column(Integer, nullable=True, index=True)
    title = Column(String, nullable=True)
    payload_json = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
