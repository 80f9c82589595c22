"""Billing router: Stripe checkout + webhook and manual payment confirmation."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import (
    AuthContext,
    ensure_user_scope,
    get_student_context,
    get_trainer_context,
)
from routers.rate_limit import rate_limit
from services.funding import (
    confirm_manual_payment,
    create_checkout_session,
    create_stripe_connect_link,
    handle_stripe_webhook,
    list_manual_payment_notifications,
    submit_manual_payment_proof,
)

router = APIRouter()


class CheckoutRequest(BaseModel):
    plan_id: str = Field(min_length=1)
    user_id: Optional[str] = None


class ManualPaymentRequest(BaseModel):
    plan_id: str = Field(min_length=1)
    user_id: Optional[str] = None


@router.post("/checkout")
async def create_checkout(
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("billing_checkout", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_student_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    return await create_checkout_session(db, scoped_user_id, request.plan_id)


@router.post("/connect")
async def connect_stripe_account(
    _rate_limit: None = Depends(rate_limit("billing_connect", limit=10, window_seconds=3600)),
    auth: AuthContext = Depends(get_trainer_context),
    db: AsyncSession = Depends(get_db),
):
    """Onboarding link for the trainer's Stripe Express account."""
    return await create_stripe_connect_link(db, auth.user_id)


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    db: AsyncSession = Depends(get_db),
):
    """Stripe webhook endpoint; authenticated by signature only."""
    payload = await request.body()
    return await handle_stripe_webhook(db, payload, stripe_signature)


@router.post("/manual-payments")
async def notify_manual_payment(
    request: ManualPaymentRequest,
    _rate_limit: None = Depends(rate_limit("manual_payment_proof", limit=10, window_seconds=3600)),
    auth: AuthContext = Depends(get_student_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    return await submit_manual_payment_proof(db, scoped_user_id, request.plan_id)


@router.get("/manual-payments")
async def pending_manual_payments(
    auth: AuthContext = Depends(get_trainer_context),
    db: AsyncSession = Depends(get_db),
):
    items = await list_manual_payment_notifications(db, auth.user_id)
    return {"items": items, "count": len(items)}


@router.post("/manual-payments/{notification_id}/confirm")
async def confirm_payment(
    notification_id: str,
    auth: AuthContext = Depends(get_trainer_context),
    db: AsyncSession = Depends(get_db),
):
    return await confirm_manual_payment(db, auth.user_id, notification_id)
