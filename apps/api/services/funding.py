"""Funding sources: Stripe checkout and onboarding, manual payments, trainer adjustments and plan assignment."""

from __future__ import annotations

import asyncio
import json
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

import stripe
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.notification import MANUAL_PAYMENT_PROOF, Notification
from models.plan import Plan
from models.processed_webhook_event import ProcessedWebhookEvent
from models.user import User
from services.accounts import get_account, require_assigned_student, require_trainer
from services.errors import (
    InvalidLedgerOperation,
    InvalidWebhookPayload,
    PaymentsNotConfigured,
    PermissionDenied,
    ReferenceNotFound,
    SignatureInvalid,
    TransientFailure,
)
from services.ledger import apply_ledger_entry, entry_summary, post_ledger_entry, run_atomic

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"


class _DuplicateEvent(Exception):
    """Another delivery of the same event committed first."""


# ---------------------------------------------------------------------------
# Stripe checkout + webhook
# ---------------------------------------------------------------------------


def _to_cents(amount: Any) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


async def create_checkout_session(db: AsyncSession, student_id: str, plan_id: str) -> Dict[str, Any]:
    """Start a Stripe Checkout purchase of ``plan_id`` paid to the trainer's connected account."""
    api_key = (settings.STRIPE_SECRET_KEY or "").strip()
    if not api_key:
        raise PaymentsNotConfigured("Stripe is not configured.")

    student = await get_account(db, student_id)
    plan_result = await db.execute(select(Plan).where(Plan.id == plan_id))
    plan = plan_result.scalar_one_or_none()
    if plan is None:
        raise ReferenceNotFound(f"Plan {plan_id} not found.")
    if plan.trainer_id != student.assigned_trainer_id:
        raise PermissionDenied("This plan is not offered by your trainer.")

    trainer_result = await db.execute(select(User.stripe_account_id).where(User.id == plan.trainer_id))
    stripe_account_id = trainer_result.scalar_one_or_none()
    if not stripe_account_id:
        raise PaymentsNotConfigured("Trainer's Stripe account is not configured.")

    unit_amount = _to_cents(plan.price)
    application_fee = int(
        (Decimal(unit_amount) * Decimal(settings.PLATFORM_FEE_PERCENT) / 100).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
    )
    try:
        session = await asyncio.to_thread(
            stripe.checkout.Session.create,
            api_key=api_key,
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": settings.STRIPE_CURRENCY,
                        "product_data": {
                            "name": plan.plan_name,
                            "description": f"{plan.credits} credits",
                        },
                        "unit_amount": unit_amount,
                    },
                    "quantity": 1,
                }
            ],
            mode="payment",
            success_url=f"{settings.FRONTEND_URL}/student/plans?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{settings.FRONTEND_URL}/student/plans",
            payment_intent_data={
                "application_fee_amount": application_fee,
                "transfer_data": {"destination": stripe_account_id},
            },
            metadata={
                "studentId": student_id,
                "planId": plan.id,
                "credits": str(plan.credits),
            },
        )
    except stripe.StripeError as exc:
        logger.warning("Stripe checkout creation failed for plan %s: %s", plan_id, exc)
        raise TransientFailure("Could not start checkout. Please try again.") from exc

    logger.info("checkout_session_created student=%s plan=%s session=%s", student_id, plan_id, session.id)
    return {"session_id": session.id, "checkout_url": session.url}


async def create_stripe_connect_link(db: AsyncSession, trainer_id: str) -> Dict[str, Any]:
    """Return a Stripe Express onboarding link, creating the connected account on first use."""
    api_key = (settings.STRIPE_SECRET_KEY or "").strip()
    if not api_key:
        raise PaymentsNotConfigured("Stripe is not configured.")

    trainer = await require_trainer(db, trainer_id)
    stripe_account_id = trainer.stripe_account_id
    try:
        if not stripe_account_id:
            account = await asyncio.to_thread(
                stripe.Account.create,
                api_key=api_key,
                type="express",
                email=trainer.email,
                country=settings.STRIPE_CONNECT_COUNTRY,
                capabilities={
                    "card_payments": {"requested": True},
                    "transfers": {"requested": True},
                },
            )
            stripe_account_id = account.id
            trainer.stripe_account_id = stripe_account_id
            await db.commit()
            logger.info("stripe_account_created trainer=%s account=%s", trainer_id, stripe_account_id)

        link = await asyncio.to_thread(
            stripe.AccountLink.create,
            api_key=api_key,
            account=stripe_account_id,
            refresh_url=f"{settings.FRONTEND_URL}/trainer/settings/payments",
            return_url=f"{settings.FRONTEND_URL}/trainer/settings/payments/stripe-return?account_id={stripe_account_id}",
            type="account_onboarding",
        )
    except stripe.StripeError as exc:
        logger.warning("Stripe onboarding failed for trainer %s: %s", trainer_id, exc)
        raise TransientFailure("Could not start Stripe onboarding. Please try again.") from exc

    return {"url": link.url, "stripe_account_id": stripe_account_id}


def verify_webhook(payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """Verify the Stripe-Signature header and return the decoded event."""
    secret = (settings.STRIPE_WEBHOOK_SECRET or "").strip()
    if not secret:
        raise PaymentsNotConfigured("Stripe webhook secret is not configured.")
    if not signature:
        raise SignatureInvalid("Missing Stripe-Signature header.")

    try:
        body = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidWebhookPayload("Webhook body is not valid UTF-8.") from exc

    try:
        stripe.WebhookSignature.verify_header(
            body,
            signature,
            secret,
            settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )
    except stripe.SignatureVerificationError as exc:
        raise SignatureInvalid(f"Webhook signature verification failed: {exc}") from exc

    try:
        event = json.loads(body)
    except ValueError as exc:
        raise InvalidWebhookPayload("Webhook body is not valid JSON.") from exc
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise InvalidWebhookPayload("Webhook event is missing id or type.")
    return event


def parse_checkout_metadata(event: Dict[str, Any]) -> Dict[str, Any]:
    """Extract ``{studentId, planId, credits}`` from a checkout completion event."""
    data = event.get("data")
    checkout = data.get("object") if isinstance(data, dict) else None
    metadata = checkout.get("metadata") if isinstance(checkout, dict) else None
    if not isinstance(metadata, dict):
        raise InvalidWebhookPayload("Webhook Error: Missing metadata.")
    student_id = metadata.get("studentId")
    plan_id = metadata.get("planId")
    raw_credits = metadata.get("credits")
    if not student_id or not plan_id or raw_credits in (None, ""):
        raise InvalidWebhookPayload("Webhook Error: Missing metadata.")
    try:
        credits = int(str(raw_credits).strip())
    except ValueError as exc:
        raise InvalidWebhookPayload("Webhook metadata credits must be an integer.") from exc
    if credits <= 0:
        raise InvalidWebhookPayload("Webhook metadata credits must be positive.")
    return {"student_id": str(student_id), "plan_id": str(plan_id), "credits": credits}


async def fulfill_checkout_completed(
    db: AsyncSession,
    event_id: str,
    event_type: str,
    checkout: Dict[str, Any],
) -> Dict[str, Any]:
    """Credit a completed checkout once per processor event id."""
    student_id = checkout["student_id"]

    async def _work(session: AsyncSession) -> Dict[str, Any]:
        seen = await session.execute(
            select(ProcessedWebhookEvent.transaction_id).where(ProcessedWebhookEvent.event_id == event_id)
        )
        if seen.first() is not None:
            return {"status": "duplicate", "event_id": event_id}

        plan_result = await session.execute(select(Plan).where(Plan.id == checkout["plan_id"]))
        plan = plan_result.scalar_one_or_none()
        if plan is None:
            raise ReferenceNotFound(f"Plan {checkout['plan_id']} not found.")

        marker = ProcessedWebhookEvent(event_id=event_id, event_type=event_type, user_id=student_id)
        session.add(marker)
        try:
            await session.flush()
        except IntegrityError as exc:
            raise _DuplicateEvent(event_id) from exc

        entry = await apply_ledger_entry(
            session,
            student_id,
            entry_type="purchase",
            amount=checkout["credits"],
            description=f"Purchased: {plan.plan_name}",
            trainer_id=plan.trainer_id,
            student_id=student_id,
            plan=plan,
            reference_type="stripe_event",
            reference_id=event_id,
        )
        marker.transaction_id = entry.id
        await session.flush()
        return {"status": "credited", "event_id": event_id, **entry_summary(entry)}

    try:
        result = await run_atomic(db, _work)
    except _DuplicateEvent:
        result = {"status": "duplicate", "event_id": event_id}

    if result["status"] == "duplicate":
        logger.info("Webhook event %s already fulfilled; skipping", event_id)
    else:
        logger.info(
            "ledger_entry committed user=%s type=purchase amount=%s balance_after=%s event=%s",
            student_id,
            result["amount"],
            result["new_balance"],
            event_id,
        )
    return result


async def handle_stripe_webhook(db: AsyncSession, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    """Verify and process one webhook delivery.

    Signature and payload problems raise (HTTP 400) so the processor retries.
    Once the event is verified, fulfillment failures are logged for manual
    reconciliation and the delivery is still acknowledged.
    """
    event = verify_webhook(payload, signature)
    event_type = str(event["type"])
    event_id = str(event["id"])
    if event_type != CHECKOUT_COMPLETED:
        logger.info("Ignoring webhook event %s of type %s", event_id, event_type)
        return {"received": True, "handled": False}

    checkout = parse_checkout_metadata(event)
    try:
        result = await fulfill_checkout_completed(db, event_id, event_type, checkout)
    except Exception:
        logger.exception(
            "Fulfillment failed for webhook event %s (student=%s plan=%s credits=%s); reconcile manually",
            event_id,
            checkout["student_id"],
            checkout["plan_id"],
            checkout["credits"],
        )
        return {"received": True, "handled": True, "fulfilled": False}

    return {"received": True, "handled": True, "fulfilled": True, "status": result["status"]}


# ---------------------------------------------------------------------------
# Manual (bank transfer / PayPal) payments
# ---------------------------------------------------------------------------


def serialize_notification(notification: Notification) -> Dict[str, Any]:
    return {
        "id": notification.id,
        "recipient_id": notification.recipient_id,
        "type": notification.type,
        "message": notification.message,
        "link": notification.link,
        "is_read": bool(notification.is_read),
        "context": notification.context or {},
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }


async def submit_manual_payment_proof(db: AsyncSession, student_id: str, plan_id: str) -> Dict[str, Any]:
    """Tell the assigned trainer that the student paid for ``plan_id`` out of band."""
    student = await get_account(db, student_id)
    if not student.assigned_trainer_id:
        raise ReferenceNotFound("No trainer assigned.")
    plan_result = await db.execute(select(Plan).where(Plan.id == plan_id))
    plan = plan_result.scalar_one_or_none()
    if plan is None:
        raise ReferenceNotFound(f"Plan {plan_id} not found.")
    if plan.trainer_id != student.assigned_trainer_id:
        raise PermissionDenied("This plan is not offered by your trainer.")

    student_name = student.name or student.email
    notification = Notification(
        recipient_id=student.assigned_trainer_id,
        type=MANUAL_PAYMENT_PROOF,
        message=f'{student_name} has indicated they\'ve paid for the "{plan.plan_name}" plan.',
        link="/trainer/students",
        is_read=False,
        context={
            "studentId": student.id,
            "studentName": student_name,
            "planId": plan.id,
            "planName": plan.plan_name,
            "credits": int(plan.credits),
        },
    )
    db.add(notification)
    await db.commit()
    await db.refresh(notification)
    logger.info("manual_payment_proof student=%s plan=%s notification=%s", student_id, plan_id, notification.id)
    return serialize_notification(notification)


async def list_manual_payment_notifications(db: AsyncSession, trainer_id: str) -> List[Dict[str, Any]]:
    await require_trainer(db, trainer_id)
    result = await db.execute(
        select(Notification)
        .where(
            Notification.recipient_id == trainer_id,
            Notification.type == MANUAL_PAYMENT_PROOF,
        )
        .order_by(Notification.created_at.desc())
    )
    return [serialize_notification(item) for item in result.scalars().all()]


async def _resolve_payment_references(session: AsyncSession, context: Dict[str, Any]) -> Plan:
    student_id = context.get("studentId")
    plan_id = context.get("planId")
    if not student_id or not plan_id or context.get("credits") in (None, ""):
        raise ReferenceNotFound("Notification data is missing.")

    student_result = await session.execute(select(User.id).where(User.id == student_id))
    if student_result.scalar_one_or_none() is None:
        raise ReferenceNotFound(f"Student {student_id} no longer exists.")
    plan_result = await session.execute(select(Plan).where(Plan.id == plan_id))
    plan = plan_result.scalar_one_or_none()
    if plan is None:
        raise ReferenceNotFound(f"Plan {plan_id} no longer exists.")
    return plan


async def confirm_manual_payment(db: AsyncSession, trainer_id: str, notification_id: str) -> Dict[str, Any]:
    """Credit the student named by a payment-proof notification and remove the notification.

    Both writes share one unit: a notification deleted by someone else
    between the read and the delete aborts the whole confirmation.
    """
    await require_trainer(db, trainer_id)

    async def _work(session: AsyncSession) -> Dict[str, Any]:
        result = await session.execute(
            select(Notification.recipient_id, Notification.type, Notification.context).where(
                Notification.id == notification_id
            )
        )
        notification = result.one_or_none()
        if notification is None or notification.type != MANUAL_PAYMENT_PROOF:
            raise ReferenceNotFound("Payment notification not found or already handled.")
        if notification.recipient_id != trainer_id:
            raise PermissionDenied("This payment notification is addressed to another trainer.")

        context = dict(notification.context or {})
        plan = await _resolve_payment_references(session, context)
        try:
            credits = int(context["credits"])
        except (TypeError, ValueError) as exc:
            raise InvalidLedgerOperation("Notification credits must be an integer.") from exc
        if credits <= 0:
            raise InvalidLedgerOperation("Notification credits must be positive.")

        deleted = await session.execute(
            delete(Notification)
            .where(Notification.id == notification_id)
            .execution_options(synchronize_session=False)
        )
        if deleted.rowcount != 1:
            raise ReferenceNotFound("Payment notification not found or already handled.")

        student_id = str(context["studentId"])
        entry = await apply_ledger_entry(
            session,
            student_id,
            entry_type="purchase",
            amount=credits,
            description=f"Manual payment confirmed for {plan.plan_name}",
            trainer_id=trainer_id,
            student_id=student_id,
            plan=plan,
            reference_type="notification",
            reference_id=notification_id,
        )
        return {
            "student_id": student_id,
            "student_name": context.get("studentName"),
            "plan_name": plan.plan_name,
            **entry_summary(entry),
        }

    confirmed = await run_atomic(db, _work)
    logger.info(
        "ledger_entry committed user=%s type=purchase amount=%s balance_after=%s notification=%s",
        confirmed["student_id"],
        confirmed["amount"],
        confirmed["new_balance"],
        notification_id,
    )
    return confirmed


# ---------------------------------------------------------------------------
# Trainer adjustments
# ---------------------------------------------------------------------------


async def adjust_credits(
    db: AsyncSession,
    trainer_id: str,
    student_id: str,
    amount: int,
    reason: str,
) -> Dict[str, Any]:
    """Add or remove credits by hand; the reason is kept verbatim in the log."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidLedgerOperation("amount must be an integer number of credits.")
    if amount == 0:
        raise InvalidLedgerOperation("amount must not be zero.")
    if not reason or not reason.strip():
        raise InvalidLedgerOperation("A reason is required for manual adjustments.")

    await require_trainer(db, trainer_id)
    await require_assigned_student(db, trainer_id, student_id)
    return await post_ledger_entry(
        db,
        student_id,
        entry_type="adjustment",
        amount=amount,
        description=f"Manual adjustment: {reason}",
        trainer_id=trainer_id,
        student_id=student_id,
    )


async def assign_plan(db: AsyncSession, trainer_id: str, student_id: str, plan_id: str) -> Dict[str, Any]:
    """Credit one of the trainer's plans directly to an assigned student (paid offline)."""
    await require_trainer(db, trainer_id)
    await require_assigned_student(db, trainer_id, student_id)

    async def _work(session: AsyncSession) -> Dict[str, Any]:
        plan_result = await session.execute(select(Plan).where(Plan.id == plan_id))
        plan = plan_result.scalar_one_or_none()
        if plan is None:
            raise ReferenceNotFound(f"Plan {plan_id} not found.")
        if plan.trainer_id != trainer_id:
            raise PermissionDenied("You can only assign your own plans.")
        entry = await apply_ledger_entry(
            session,
            student_id,
            entry_type="purchase",
            amount=int(plan.credits),
            description=f"Assigned plan: {plan.plan_name}",
            trainer_id=trainer_id,
            student_id=student_id,
            plan=plan,
            reference_type="plan",
            reference_id=plan.id,
        )
        return {"plan_name": plan.plan_name, **entry_summary(entry)}

    assigned = await run_atomic(db, _work)
    logger.info(
        "ledger_entry committed user=%s type=purchase amount=%s balance_after=%s plan=%s",
        student_id,
        assigned["amount"],
        assigned["new_balance"],
        plan_id,
    )
    return assigned
