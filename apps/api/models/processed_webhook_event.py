"""ProcessedWebhookEvent model for webhook deduplication."""

from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func

from database import Base


class ProcessedWebhookEvent(Base):
    """Payment processor event that has already been fulfilled."""

    __tablename__ = "processed_webhook_events"

    event_id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False)
    user_id = Column(String, nullable=True, index=True)
    transaction_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
