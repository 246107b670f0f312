from datetime import datetime

from sqlalchemy import Column, DateTime, String, Text

from ..core.database import Base


class VapidConfig(Base):
    __tablename__ = "vapid_config"

    # Singleton row
    id = Column(String, primary_key=True, default="default")
    public_key = Column(Text, nullable=False)
    private_key = Column(Text, nullable=False)
    subject = Column(String, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
