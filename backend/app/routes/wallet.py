from __future__ import annotations
import stripe
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.db import get_session
from app.auth_deps import require
from app.errors import BadRequest
from app.models.user import User
from app.schemas.ledger import to_public
from app.schemas.wallet import WalletSnapshot, CreateDepositRequest, CreateDepositResponse
from app.services.ledger import wallet_balance, history
from app.services.wallet import remaining_daily_deposit

router = APIRouter(prefix="/wallet", tags=["wallet"])

@router.get("", response_model=WalletSnapshot)
async def get_wallet(session: AsyncSession = Depends(get_session), user: User = Depends(require("wallet.view"))):
    bal = await wallet_balance(session, user.id)
    rows, _total = await history(session, user.id, limit=20)
    return WalletSnapshot(balance=bal, recent=[to_public(r) for r in rows])

@router.post("/deposit/checkout", response_model=CreateDepositResponse)
async def create_deposit_checkout(
    payload: CreateDepositRequest,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(require("wallet.deposit")),
):
    if not settings.stripe_secret_key:
        raise HTTPException(status_code=500, detail="Stripe not configured")

    if payload.tokens > await remaining_daily_deposit(session, user.id):
        raise BadRequest("Daily deposit limit exceeded")

    # 1 token = 1 cent (by default). If TOKEN_PRICE_USD_CENTS != 1, we scale.
    usd_cents = payload.tokens * max(1, settings.token_price_usd_cents)
    stripe.api_key = settings.stripe_secret_key

    # Create a one-off payment via Checkout
    checkout = stripe.checkout.Session.create(
        mode="payment",
        client_reference_id=str(user.id),  # read back in the webhook
        line_items=[{
            "price_data": {
                "currency": "usd",
                "product_data": {"name": f"{settings.app_display_name} Wallet Top-up"},
                "unit_amount": int(usd_cents),
            },
            "quantity": 1,
        }],
        payment_intent_data={
            "metadata": {
                "user_id": str(user.id),
                "tokens_requested": str(payload.tokens),
            }
        },
        success_url=str(payload.success_url) + "?session_id={CHECKOUT_SESSION_ID}",
        cancel_url=str(payload.cancel_url),
    )

    return CreateDepositResponse(checkout_url=checkout["url"], session_id=checkout["id"])
