"""User model."""

from sqlalchemy import CheckConstraint, Column, String, DateTime, ForeignKey, Integer
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """Student or trainer account.

    For students this row is also the credit account: ``credits`` is the
    balance and ``version`` counts committed ledger entries. Both are written
    only by ``services.ledger``.
    """

    __tablename__ = "users"
    __table_args__ = (CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    role = Column(String, nullable=False, default="student", index=True)  # student, trainer
    assigned_trainer_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)

    credits = Column(Integer, nullable=False, default=0, server_default="0")
    version = Column(Integer, nullable=False, default=0, server_default="0")
    current_plan_id = Column(String, nullable=True)
    current_plan_name = Column(String, nullable=True)
    current_plan_assigned_at = Column(DateTime(timezone=True), nullable=True)

    # Trainer pricing; NULL falls back to the configured defaults
    ai_evaluation_cost = Column(Integer, nullable=True)
    trainer_evaluation_cost = Column(Integer, nullable=True)
    stripe_account_id = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    credit_transactions = relationship(
        "CreditTransaction",
        back_populates="user",
        foreign_keys="CreditTransaction.user_id",
    )
    plans = relationship("Plan", back_populates="trainer")
