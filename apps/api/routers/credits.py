"""Student credit balance, history, and evaluation spend router."""

from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context, get_student_context
from routers.rate_limit import rate_limit
from services.evaluations import request_evaluation
from services.ledger_views import get_balance, list_transactions, reconcile_account

router = APIRouter()


class EvaluationRequest(BaseModel):
    submission_id: str = Field(min_length=1)
    evaluation_type: Literal["ai", "manual"]
    user_id: Optional[str] = None


@router.get("/balance")
async def credits_balance(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    return await get_balance(db, scoped_user_id)


@router.get("/transactions")
async def credits_transactions(
    user_id: Optional[str] = Query(default=None),
    entry_type: Optional[Literal["purchase", "spend", "adjustment"]] = Query(default=None, alias="type"),
    cursor: Optional[str] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    return await list_transactions(db, scoped_user_id, entry_type=entry_type, cursor=cursor, limit=limit)


@router.get("/reconcile")
async def credits_reconcile(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    return await reconcile_account(db, scoped_user_id)


@router.post("/evaluations")
async def create_evaluation_request(
    request: EvaluationRequest,
    _rate_limit: None = Depends(rate_limit("evaluation_request", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_student_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    return await request_evaluation(
        db,
        scoped_user_id,
        request.submission_id,
        request.evaluation_type,
    )
