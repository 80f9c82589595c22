"""Trainer-facing ledger router: adjustments, student history, sales, pricing."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_trainer_context
from services.accounts import require_assigned_student, require_trainer
from services.evaluations import get_evaluation_costs, update_trainer_pricing
from services.funding import adjust_credits, assign_plan
from services.ledger_views import aggregate_sales, list_transactions, reconcile_account

router = APIRouter()


class AdjustmentRequest(BaseModel):
    amount: int
    reason: str = Field(min_length=1, max_length=500)


class AssignPlanRequest(BaseModel):
    plan_id: str = Field(min_length=1)


class PricingUpdateRequest(BaseModel):
    ai_evaluation_cost: Optional[int] = Field(default=None, ge=0)
    trainer_evaluation_cost: Optional[int] = Field(default=None, ge=0)


@router.post("/students/{student_id}/adjustments")
async def create_adjustment(
    student_id: str,
    request: AdjustmentRequest,
    auth: AuthContext = Depends(get_trainer_context),
    db: AsyncSession = Depends(get_db),
):
    return await adjust_credits(db, auth.user_id, student_id, request.amount, request.reason)


@router.post("/students/{student_id}/plans")
async def assign_student_plan(
    student_id: str,
    request: AssignPlanRequest,
    auth: AuthContext = Depends(get_trainer_context),
    db: AsyncSession = Depends(get_db),
):
    return await assign_plan(db, auth.user_id, student_id, request.plan_id)


@router.get("/students/{student_id}/transactions")
async def student_transactions(
    student_id: str,
    entry_type: Optional[Literal["purchase", "spend", "adjustment"]] = Query(default=None, alias="type"),
    cursor: Optional[str] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    auth: AuthContext = Depends(get_trainer_context),
    db: AsyncSession = Depends(get_db),
):
    await require_trainer(db, auth.user_id)
    await require_assigned_student(db, auth.user_id, student_id)
    return await list_transactions(db, student_id, entry_type=entry_type, cursor=cursor, limit=limit)


@router.get("/students/{student_id}/reconcile")
async def student_reconcile(
    student_id: str,
    auth: AuthContext = Depends(get_trainer_context),
    db: AsyncSession = Depends(get_db),
):
    await require_trainer(db, auth.user_id)
    await require_assigned_student(db, auth.user_id, student_id)
    return await reconcile_account(db, student_id)


@router.get("/sales")
async def sales_summary(
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    auth: AuthContext = Depends(get_trainer_context),
    db: AsyncSession = Depends(get_db),
):
    await require_trainer(db, auth.user_id)
    return await aggregate_sales(db, auth.user_id, start=start, end=end)


@router.get("/pricing")
async def get_pricing(
    auth: AuthContext = Depends(get_trainer_context),
    db: AsyncSession = Depends(get_db),
):
    trainer = await require_trainer(db, auth.user_id)
    return get_evaluation_costs(trainer)


@router.put("/pricing")
async def put_pricing(
    request: PricingUpdateRequest,
    auth: AuthContext = Depends(get_trainer_context),
    db: AsyncSession = Depends(get_db),
):
    return await update_trainer_pricing(
        db,
        auth.user_id,
        ai_evaluation_cost=request.ai_evaluation_cost,
        trainer_evaluation_cost=request.trainer_evaluation_cost,
    )
