"""Read-only views over the credit ledger: balances, history, sales, reconciliation."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_transaction import TRANSACTION_TYPES, CreditTransaction
from models.user import User
from services.errors import AccountNotFound, InvalidLedgerOperation


MAX_PAGE_SIZE = 100
PLAN_DESCRIPTION_PREFIXES = ("Purchased: ", "Manual payment confirmed for ", "Assigned plan: ")


def _to_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def serialize_transaction(entry: CreditTransaction) -> Dict[str, Any]:
    created_at = _to_utc(entry.created_at)
    return {
        "id": entry.id,
        "type": entry.type,
        "amount": entry.amount,
        "description": entry.description,
        "balance_after": entry.balance_after,
        "sequence": entry.sequence,
        "trainer_id": entry.trainer_id,
        "student_id": entry.student_id,
        "plan_name": entry.plan_name,
        "reference_type": entry.reference_type,
        "reference_id": entry.reference_id,
        "created_at": created_at.isoformat() if created_at else None,
    }


async def get_balance(db: AsyncSession, user_id: str) -> Dict[str, Any]:
    result = await db.execute(
        select(
            User.credits,
            User.current_plan_id,
            User.current_plan_name,
            User.current_plan_assigned_at,
        ).where(User.id == user_id)
    )
    row = result.one_or_none()
    if row is None:
        raise AccountNotFound(f"Account {user_id} not found.")

    current_plan = None
    if row.current_plan_id:
        assigned_at = _to_utc(row.current_plan_assigned_at)
        current_plan = {
            "plan_id": row.current_plan_id,
            "plan_name": row.current_plan_name,
            "assigned_at": assigned_at.isoformat() if assigned_at else None,
        }
    return {"user_id": user_id, "credits": int(row.credits or 0), "current_plan": current_plan}


async def list_transactions(
    db: AsyncSession,
    user_id: str,
    *,
    entry_type: Optional[str] = None,
    cursor: Optional[str] = None,
    limit: int = 20,
) -> Dict[str, Any]:
    """Newest-first page of an account's log.

    ``cursor`` is the id of the last transaction of the previous page. Pages
    are not stable against entries committed between requests.
    """
    if entry_type is not None and entry_type not in TRANSACTION_TYPES:
        raise InvalidLedgerOperation(f"Unknown transaction type filter: {entry_type}")
    page_size = max(1, min(int(limit), MAX_PAGE_SIZE))

    exists = await db.execute(select(User.id).where(User.id == user_id))
    if exists.scalar_one_or_none() is None:
        raise AccountNotFound(f"Account {user_id} not found.")

    filters = [CreditTransaction.user_id == user_id]
    if entry_type:
        filters.append(CreditTransaction.type == entry_type)

    count_result = await db.execute(select(func.count(CreditTransaction.id)).where(*filters))
    total_count = int(count_result.scalar() or 0)

    query = select(CreditTransaction).where(*filters)
    if cursor:
        cursor_result = await db.execute(
            select(CreditTransaction.sequence).where(
                CreditTransaction.id == cursor,
                CreditTransaction.user_id == user_id,
            )
        )
        cursor_sequence = cursor_result.scalar_one_or_none()
        if cursor_sequence is None:
            raise InvalidLedgerOperation("Unknown pagination cursor.")
        query = query.where(CreditTransaction.sequence < cursor_sequence)

    result = await db.execute(query.order_by(CreditTransaction.sequence.desc()).limit(page_size + 1))
    entries = list(result.scalars().all())
    has_more = len(entries) > page_size
    entries = entries[:page_size]

    return {
        "items": [serialize_transaction(entry) for entry in entries],
        "next_cursor": entries[-1].id if has_more and entries else None,
        "total_count": total_count,
        "limit": page_size,
    }


def _plan_label(entry: CreditTransaction) -> str:
    if entry.plan_name:
        return entry.plan_name
    label = entry.description or ""
    for prefix in PLAN_DESCRIPTION_PREFIXES:
        if label.startswith(prefix):
            return label[len(prefix):]
    return label or "Unknown plan"


async def aggregate_sales(
    db: AsyncSession,
    trainer_id: str,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Sum purchase entries of every student assigned to ``trainer_id``.

    ``start`` and ``end`` are both inclusive.
    """
    start_utc = _to_utc(start)
    end_utc = _to_utc(end)
    if start_utc and end_utc and start_utc > end_utc:
        raise InvalidLedgerOperation("start must not be after end.")

    students = select(User.id).where(User.assigned_trainer_id == trainer_id)
    query = select(CreditTransaction).where(
        CreditTransaction.type == "purchase",
        CreditTransaction.user_id.in_(students),
    )
    if start_utc:
        query = query.where(CreditTransaction.created_at >= start_utc)
    if end_utc:
        query = query.where(CreditTransaction.created_at <= end_utc)

    result = await db.execute(query.order_by(CreditTransaction.created_at.asc()))
    purchases = result.scalars().all()

    by_month: Dict[str, Dict[str, int]] = {}
    by_plan: Dict[str, Dict[str, int]] = {}
    total_credits = 0
    for entry in purchases:
        total_credits += entry.amount
        month = _to_utc(entry.created_at).strftime("%Y-%m")
        month_bucket = by_month.setdefault(month, {"credits": 0, "count": 0})
        month_bucket["credits"] += entry.amount
        month_bucket["count"] += 1
        plan_bucket = by_plan.setdefault(_plan_label(entry), {"credits": 0, "count": 0})
        plan_bucket["credits"] += entry.amount
        plan_bucket["count"] += 1

    customer_count = len({entry.user_id for entry in purchases})
    return {
        "trainer_id": trainer_id,
        "start": start_utc.isoformat() if start_utc else None,
        "end": end_utc.isoformat() if end_utc else None,
        "purchase_count": len(purchases),
        "total_credits": total_credits,
        "customer_count": customer_count,
        "average_credits_per_customer": round(total_credits / customer_count, 2) if customer_count else 0,
        "by_month": [{"month": month, **bucket} for month, bucket in sorted(by_month.items())],
        "by_plan": [
            {"plan_name": name, **bucket}
            for name, bucket in sorted(by_plan.items(), key=lambda item: (-item[1]["count"], item[0]))
        ],
    }


async def reconcile_account(db: AsyncSession, user_id: str) -> Dict[str, Any]:
    """Replay an account's log and compare it with the stored balance."""
    account_result = await db.execute(select(User.credits, User.version).where(User.id == user_id))
    account = account_result.one_or_none()
    if account is None:
        raise AccountNotFound(f"Account {user_id} not found.")

    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.sequence.asc())
    )
    entries = result.scalars().all()

    problems: List[str] = []
    running = 0
    for position, entry in enumerate(entries, start=1):
        running += entry.amount
        if entry.sequence != position:
            problems.append(f"Entry {entry.id} has sequence {entry.sequence}, expected {position}.")
        if entry.balance_after != running:
            problems.append(
                f"Entry {entry.id} records balance_after={entry.balance_after} but replay gives {running}."
            )
        if running < 0:
            problems.append(f"Balance is negative ({running}) after entry {entry.id}.")

    credits = int(account.credits or 0)
    last_balance_after = entries[-1].balance_after if entries else None
    if credits != running:
        problems.append(f"Stored credits {credits} differ from ledger sum {running}.")
    if last_balance_after is not None and credits != last_balance_after:
        problems.append(f"Stored credits {credits} differ from last balance_after {last_balance_after}.")
    if int(account.version or 0) != len(entries):
        problems.append(f"Account version {account.version} differs from entry count {len(entries)}.")

    return {
        "user_id": user_id,
        "credits": credits,
        "ledger_sum": running,
        "last_balance_after": last_balance_after,
        "entry_count": len(entries),
        "consistent": not problems,
        "problems": problems,
    }
