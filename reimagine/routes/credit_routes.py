"""
Reimagine Photos API - Credit Routes
Balance lookup (with first-login provisioning), Stripe checkout and purchase webhook
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from loguru import logger

from ..deps import get_current_user, get_ledger, get_stripe_service
from ..models.schemas import CheckoutRequest, CheckoutResponse, CreditBalanceResponse, WebhookResponse
from ..services.credit_ledger import CreditLedger, LedgerError
from ..services.firebase_service import AuthenticatedUser
from ..services.stripe_service import PaymentError, StripeService

router = APIRouter(prefix="/api/v1/credits", tags=["Credits"])


@router.get("/balance", response_model=CreditBalanceResponse)
async def get_balance(
    user: AuthenticatedUser = Depends(get_current_user),
    ledger: CreditLedger = Depends(get_ledger),
):
    """
    Get the caller's credit balance.
    First call after signup creates the profile with the starting credits.
    """
    try:
        credits = await ledger.provision(user.uid, user.email)
    except LedgerError as e:
        logger.error(f"❌ Error getting balance for {user.uid}: {e}")
        raise HTTPException(status_code=503, detail="Credit service is temporarily unavailable")

    return CreditBalanceResponse(success=True, credits=credits, user_id=user.uid)


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    request: CheckoutRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    stripe_service: StripeService = Depends(get_stripe_service),
):
    """Start a hosted Stripe Checkout for a credit pack."""
    try:
        url = await stripe_service.create_checkout(user.uid, user.email, request.price_id)
    except PaymentError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return CheckoutResponse(success=True, url=url)


@router.post("/webhook/stripe", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    stripe_service: StripeService = Depends(get_stripe_service),
):
    """
    Stripe webhook - credits completed purchases.
    Deduplicated per checkout session, so Stripe retries are safe.
    """
    payload = await request.body()
    try:
        result = await stripe_service.handle_webhook(payload, stripe_signature)
    except PaymentError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    return WebhookResponse(**result)
