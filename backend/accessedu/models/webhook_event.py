from sqlalchemy import Column, Integer, String, DateTime, func
from accessedu.core.database import Base


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_key = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False)
    subscription_code = Column(String(100), nullable=True, index=True)
    outcome = Column(String(50), nullable=True)
    processed_at = Column(DateTime, nullable=False, server_default=func.now())
