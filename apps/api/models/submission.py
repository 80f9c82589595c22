"""Submission model."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer
from sqlalchemy.sql import func
import uuid

from database import Base


class Submission(Base):
    """A student's answer to a writing test, evaluated at most once."""

    __tablename__ = "submissions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    student_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    test_id = Column(String, nullable=True)
    test_title = Column(String, nullable=True)
    trainer_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    evaluation_type = Column(String, nullable=True)  # ai, manual
    credits_charged = Column(Integer, nullable=True)
    status = Column(String, nullable=False, default="submitted")  # submitted, ai_queued, pending_review
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    evaluation_requested_at = Column(DateTime(timezone=True), nullable=True)
