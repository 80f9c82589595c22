"""Account lookups shared by the funding and spend flows."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.user import User
from services.errors import AccountNotFound, PermissionDenied, ReferenceNotFound


async def get_account(db: AsyncSession, user_id: str) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise AccountNotFound(f"Account {user_id} not found.")
    return user


async def require_trainer(db: AsyncSession, trainer_id: str) -> User:
    result = await db.execute(select(User).where(User.id == trainer_id))
    trainer = result.scalar_one_or_none()
    if trainer is None:
        raise ReferenceNotFound(f"Trainer {trainer_id} not found.")
    if trainer.role != "trainer":
        raise PermissionDenied("Only trainers can perform this action.")
    return trainer


async def require_assigned_student(db: AsyncSession, trainer_id: str, student_id: str) -> User:
    """Return the student if it is assigned to ``trainer_id``."""
    student = await get_account(db, student_id)
    if student.assigned_trainer_id != trainer_id:
        raise PermissionDenied("Student not found or not assigned to you.")
    return student
