"""CreditTransaction model: the append-only credit log."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from database import Base


TRANSACTION_TYPES = ("purchase", "spend", "adjustment")


class CreditTransaction(Base):
    """Immutable credit ledger entry."""

    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("user_id", "sequence", name="uq_credit_transactions_user_sequence"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    type = Column(String, nullable=False, index=True)  # purchase, spend, adjustment
    amount = Column(Integer, nullable=False)
    description = Column(String, nullable=False)
    balance_after = Column(Integer, nullable=False)
    trainer_id = Column(String, nullable=True, index=True)
    student_id = Column(String, nullable=True)
    plan_name = Column(String, nullable=True)
    reference_type = Column(String, nullable=True)
    reference_id = Column(String, nullable=True)
    # Assigned by the ledger at commit time, not by the database clock
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)

    user = relationship("User", back_populates="credit_transactions", foreign_keys=[user_id])
