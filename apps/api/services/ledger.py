"""Credit ledger: the single code path that changes a student's balance.

A balance change is always two writes, the account row (``users.credits``
and ``users.version``) and one appended ``CreditTransaction``. Both happen
inside one unit run by ``run_atomic``; the account write is conditional on
the version read in the same unit, so a concurrent writer makes the unit
fail with ``ConcurrentModification`` and it is re-run against fresh state.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import TRANSACTION_TYPES, CreditTransaction
from models.plan import Plan
from models.user import User
from services.errors import (
    AccountNotFound,
    ConcurrentModification,
    InsufficientBalance,
    InvalidLedgerOperation,
    TransientFailure,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timezone-aware columns back as naive values.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def run_atomic(
    db: AsyncSession,
    work: Callable[[AsyncSession], Awaitable[T]],
    *,
    max_attempts: Optional[int] = None,
) -> T:
    """Run ``work`` and commit it as one unit, re-running it on write conflicts.

    ``work`` must do all of its reads through ``db`` so a retry sees fresh
    state. Conflicts (``ConcurrentModification`` or a database lock /
    serialization error) roll back and retry up to ``LEDGER_MAX_ATTEMPTS``
    times, after which ``TransientFailure`` is raised. Any other error rolls
    back and propagates unchanged.
    """
    attempts = max(int(max_attempts or settings.LEDGER_MAX_ATTEMPTS), 1)
    for attempt in range(1, attempts + 1):
        try:
            result = await work(db)
            await db.commit()
            return result
        except (ConcurrentModification, OperationalError) as exc:
            await db.rollback()
            logger.warning("Ledger unit conflict (attempt %s/%s): %s", attempt, attempts, exc)
        except Exception:
            await db.rollback()
            raise
    raise TransientFailure()


def _validate_entry(entry_type: str, amount: Any, description: str) -> str:
    if entry_type not in TRANSACTION_TYPES:
        raise InvalidLedgerOperation(f"Unknown transaction type: {entry_type}")
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidLedgerOperation("amount must be an integer number of credits.")
    if amount == 0:
        raise InvalidLedgerOperation("amount must not be zero.")
    if entry_type == "purchase" and amount < 0:
        raise InvalidLedgerOperation("purchase entries must credit the account.")
    if entry_type == "spend" and amount > 0:
        raise InvalidLedgerOperation("spend entries must debit the account.")
    cleaned = (description or "").strip()
    if not cleaned:
        raise InvalidLedgerOperation("description is required for every ledger entry.")
    return cleaned


async def _next_timestamp(db: AsyncSession, user_id: str) -> datetime:
    """Server timestamp that never goes backwards within one account's log."""
    now = datetime.now(timezone.utc)
    result = await db.execute(
        select(CreditTransaction.created_at)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.sequence.desc())
        .limit(1)
    )
    last_created_at = result.scalar_one_or_none()
    if last_created_at is not None and _as_utc(last_created_at) > now:
        return _as_utc(last_created_at)
    return now


async def apply_ledger_entry(
    db: AsyncSession,
    user_id: str,
    *,
    entry_type: str,
    amount: int,
    description: str,
    trainer_id: Optional[str] = None,
    student_id: Optional[str] = None,
    plan: Optional[Plan] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> CreditTransaction:
    """Stage one balance change plus its log entry inside the caller's unit.

    Must run inside ``run_atomic``; nothing is committed here. Raises
    ``AccountNotFound``, ``InsufficientBalance`` (no writes staged) or
    ``ConcurrentModification`` when the account moved since it was read.
    """
    description = _validate_entry(entry_type, amount, description)

    result = await db.execute(select(User.credits, User.version).where(User.id == user_id))
    row = result.one_or_none()
    if row is None:
        raise AccountNotFound(f"Account {user_id} not found.")

    balance = int(row.credits or 0)
    version = int(row.version or 0)
    new_balance = balance + amount
    if new_balance < 0:
        raise InsufficientBalance(required=-amount, available=balance)

    created_at = await _next_timestamp(db, user_id)
    values: Dict[str, Any] = {"credits": new_balance, "version": version + 1}
    if plan is not None:
        values.update(
            current_plan_id=plan.id,
            current_plan_name=plan.plan_name,
            current_plan_assigned_at=created_at,
        )

    updated = await db.execute(
        update(User)
        .where(User.id == user_id, User.version == version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if updated.rowcount != 1:
        raise ConcurrentModification(f"Account {user_id} changed while applying a {entry_type} entry.")

    entry = CreditTransaction(
        id=str(uuid.uuid4()),
        user_id=user_id,
        sequence=version + 1,
        type=entry_type,
        amount=amount,
        description=description,
        balance_after=new_balance,
        trainer_id=trainer_id,
        student_id=student_id,
        plan_name=plan.plan_name if plan is not None else None,
        reference_type=reference_type,
        reference_id=reference_id,
        created_at=created_at,
    )
    db.add(entry)
    try:
        await db.flush()
    except IntegrityError as exc:
        raise ConcurrentModification(f"Ledger position {version + 1} for {user_id} already taken.") from exc

    logger.debug(
        "ledger_entry staged user=%s type=%s amount=%s balance_after=%s",
        user_id,
        entry_type,
        amount,
        new_balance,
    )
    return entry


async def post_ledger_entry(
    db: AsyncSession,
    user_id: str,
    *,
    entry_type: str,
    amount: int,
    description: str,
    **context: Any,
) -> Dict[str, Any]:
    """Apply and commit a single ledger entry as its own atomic unit."""

    async def _work(session: AsyncSession) -> Dict[str, Any]:
        entry = await apply_ledger_entry(
            session,
            user_id,
            entry_type=entry_type,
            amount=amount,
            description=description,
            **context,
        )
        return entry_summary(entry)

    summary = await run_atomic(db, _work)
    logger.info(
        "ledger_entry committed user=%s type=%s amount=%s balance_after=%s",
        user_id,
        summary["type"],
        summary["amount"],
        summary["new_balance"],
    )
    return summary


def entry_summary(entry: CreditTransaction) -> Dict[str, Any]:
    """Plain snapshot of a staged entry, safe to use after the unit commits."""
    return {
        "transaction_id": entry.id,
        "type": entry.type,
        "amount": entry.amount,
        "new_balance": entry.balance_after,
    }
