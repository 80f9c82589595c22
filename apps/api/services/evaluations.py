"""Evaluation requests: pricing lookup and the credit debit that pays for them."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.submission import Submission
from models.user import User
from services.accounts import require_trainer
from services.errors import (
    AccountNotFound,
    InvalidLedgerOperation,
    PermissionDenied,
    ReferenceNotFound,
    SubmissionAlreadyEvaluated,
)
from services.evaluation_queue import enqueue_ai_evaluation
from services.ledger import apply_ledger_entry, entry_summary, run_atomic

logger = logging.getLogger(__name__)

EVALUATION_TYPES = ("ai", "manual")
EVALUATION_LABELS = {"ai": "AI", "manual": "Trainer"}


def get_evaluation_costs(trainer: Optional[Any]) -> Dict[str, int]:
    """Trainer pricing with configured defaults for anything unset."""
    ai_cost = getattr(trainer, "ai_evaluation_cost", None)
    trainer_cost = getattr(trainer, "trainer_evaluation_cost", None)
    return {
        "ai": max(int(ai_cost if ai_cost is not None else settings.DEFAULT_AI_EVALUATION_COST), 0),
        "manual": max(
            int(trainer_cost if trainer_cost is not None else settings.DEFAULT_TRAINER_EVALUATION_COST),
            0,
        ),
    }


async def request_evaluation(
    db: AsyncSession,
    student_id: str,
    submission_id: str,
    evaluation_type: str,
) -> Dict[str, Any]:
    """Charge the student and mark the submission for evaluation, exactly once.

    The debit and the submission update commit together. AI requests are
    queued only after that commit; a queueing failure is logged and the
    debit stands.
    """
    if evaluation_type not in EVALUATION_TYPES:
        raise InvalidLedgerOperation(f"Unknown evaluation type: {evaluation_type}")

    async def _work(session: AsyncSession) -> Dict[str, Any]:
        student_result = await session.execute(
            select(User.id, User.assigned_trainer_id).where(User.id == student_id)
        )
        student = student_result.one_or_none()
        if student is None:
            raise AccountNotFound(f"Account {student_id} not found.")

        submission_result = await session.execute(
            select(Submission.student_id, Submission.test_title, Submission.evaluation_type).where(
                Submission.id == submission_id
            )
        )
        submission = submission_result.one_or_none()
        if submission is None:
            raise ReferenceNotFound(f"Submission {submission_id} not found.")
        if submission.student_id != student_id:
            raise PermissionDenied("This submission belongs to another student.")
        if submission.evaluation_type:
            raise SubmissionAlreadyEvaluated()
        if not student.assigned_trainer_id:
            raise ReferenceNotFound("No trainer assigned. Join a trainer before requesting an evaluation.")

        trainer_result = await session.execute(
            select(User.ai_evaluation_cost, User.trainer_evaluation_cost).where(
                User.id == student.assigned_trainer_id,
                User.role == "trainer",
            )
        )
        trainer = trainer_result.one_or_none()
        if trainer is None:
            raise ReferenceNotFound("Trainer data not found.")
        cost = get_evaluation_costs(trainer)[evaluation_type]

        marked = await session.execute(
            update(Submission)
            .where(Submission.id == submission_id, Submission.evaluation_type.is_(None))
            .values(
                evaluation_type=evaluation_type,
                trainer_id=student.assigned_trainer_id,
                credits_charged=cost,
                status="ai_queued" if evaluation_type == "ai" else "pending_review",
                evaluation_requested_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if marked.rowcount != 1:
            raise SubmissionAlreadyEvaluated()

        charge: Optional[Dict[str, Any]] = None
        if cost > 0:
            title = submission.test_title or "Untitled test"
            entry = await apply_ledger_entry(
                session,
                student_id,
                entry_type="spend",
                amount=-cost,
                description=f'{EVALUATION_LABELS[evaluation_type]} Evaluation for "{title}"',
                trainer_id=student.assigned_trainer_id,
                student_id=student_id,
                reference_type="submission",
                reference_id=submission_id,
            )
            charge = entry_summary(entry)
        return {"trainer_id": student.assigned_trainer_id, "cost": cost, "charge": charge}

    outcome = await run_atomic(db, _work)
    charge = outcome["charge"]
    if charge:
        logger.info(
            "ledger_entry committed user=%s type=spend amount=%s balance_after=%s submission=%s",
            student_id,
            charge["amount"],
            charge["new_balance"],
            submission_id,
        )
        balance_after = charge["new_balance"]
    else:
        balance_result = await db.execute(select(User.credits).where(User.id == student_id))
        balance_after = int(balance_result.scalar() or 0)

    ai_job_enqueued = False
    if evaluation_type == "ai":
        ai_job_enqueued = await _trigger_ai_evaluation(submission_id, outcome["trainer_id"])

    return {
        "accepted": True,
        "submission_id": submission_id,
        "evaluation_type": evaluation_type,
        "charged": outcome["cost"],
        "balance_after": balance_after,
        "transaction_id": charge["transaction_id"] if charge else None,
        "ai_job_enqueued": ai_job_enqueued,
    }


async def _trigger_ai_evaluation(submission_id: str, trainer_id: str) -> bool:
    if not settings.AI_EVALUATION_ENABLED:
        logger.info("AI evaluation disabled; submission %s left queued", submission_id)
        return False
    try:
        await asyncio.to_thread(enqueue_ai_evaluation, submission_id, trainer_id)
    except Exception as exc:
        # The debit is final; operators re-queue from the submission status.
        logger.warning("AI evaluation enqueue failed for submission %s: %s", submission_id, exc)
        return False
    return True


async def update_trainer_pricing(
    db: AsyncSession,
    trainer_id: str,
    *,
    ai_evaluation_cost: Optional[int] = None,
    trainer_evaluation_cost: Optional[int] = None,
) -> Dict[str, int]:
    trainer = await require_trainer(db, trainer_id)
    for name, value in (
        ("ai_evaluation_cost", ai_evaluation_cost),
        ("trainer_evaluation_cost", trainer_evaluation_cost),
    ):
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise InvalidLedgerOperation(f"{name} must be a non-negative integer.")
        setattr(trainer, name, value)
    await db.commit()
    return get_evaluation_costs(trainer)
