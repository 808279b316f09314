from __future__ import annotations
from uuid import UUID
import stripe
import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession
from app.config import settings
from app.db import get_session
from app.services.wallet import credit_deposit_idempotent

router = APIRouter(tags=["stripe"])
log = structlog.get_logger()


def _deposit_from_event(event) -> tuple[str, str, int] | None:
    """(payment_intent_id, user_id, amount_cents) for paid deposit events, else None."""
    obj = event["data"]["object"]
    if event["type"] == "checkout.session.completed":
        if obj.get("payment_status") != "paid":
            return None
        pi_id = obj.get("payment_intent")
        user_id = obj.get("client_reference_id") or (obj.get("metadata") or {}).get("user_id")
        cents = int(obj.get("amount_total") or 0)
    elif event["type"] == "payment_intent.succeeded":
        if obj.get("status") != "succeeded":
            return None
        pi_id = obj.get("id")
        user_id = (obj.get("metadata") or {}).get("user_id")
        cents = int(obj.get("amount_received") or obj.get("amount") or 0)
    else:
        return None
    if not (pi_id and user_id and cents > 0):
        return None
    return pi_id, user_id, cents


@router.post("/stripe/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_session),
):
    if not settings.stripe_webhook_secret or not settings.stripe_secret_key:
        raise HTTPException(status_code=500, detail="Stripe not configured")

    payload = await request.body()
    try:
        event = stripe.Webhook.construct_event(
            payload=payload.decode("utf-8"),
            sig_header=stripe_signature or "",
            secret=settings.stripe_webhook_secret,
        )
    except (ValueError, stripe.SignatureVerificationError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid webhook: {e}")

    if event["type"] not in ("checkout.session.completed", "payment_intent.succeeded"):
        return {"ignored": event["type"]}

    # Both event types carry the payment intent id, which is the idempotency key.
    deposit = _deposit_from_event(event)
    if deposit is None:
        return {"ok": True}
    pi_id, user_id, cents = deposit
    created = await credit_deposit_idempotent(db, user_id=UUID(user_id), external_id=pi_id, usd_cents=cents)
    if created:
        await db.commit()
    log.info("stripe_deposit", payment_intent=pi_id, user_id=user_id, credited=created)
    return {"ok": True, "credited": created}
