"""Notification model."""

from sqlalchemy import Boolean, Column, String, DateTime, ForeignKey, JSON
from sqlalchemy.sql import func
import uuid

from database import Base


MANUAL_PAYMENT_PROOF = "manual_payment_proof"


class Notification(Base):
    """In-app notification addressed to a single user."""

    __tablename__ = "notifications"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    recipient_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String, nullable=False, index=True)
    message = Column(String, nullable=True)
    link = Column(String, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    context = Column(JSON, nullable=True)  # studentId, studentName, planId, planName, credits
    created_at = Column(DateTime(timezone=True), server_default=func.now())
