"""
Reimagine Photos - Stripe Service
Hosted checkout for credit packs and purchase fulfillment via webhook.
"""
import asyncio
import json
from typing import Any, Dict, Optional

import stripe
from loguru import logger

from .credit_ledger import CreditLedger, UserNotFoundError


class PaymentError(Exception):
    """Checkout or webhook request that cannot be processed."""

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class StripeService:
    """Creates checkout sessions and credits completed purchases."""

    def __init__(
        self,
        ledger: CreditLedger,
        secret_key: str,
        webhook_secret: str,
        price_credits: Dict[str, int],
        success_url: str,
        cancel_url: str,
    ):
        self.ledger = ledger
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.price_credits = price_credits
        self.success_url = success_url
        self.cancel_url = cancel_url

    @property
    def is_configured(self) -> bool:
        return bool(self.secret_key)

    async def create_checkout(self, user_id: str, email: Optional[str], price_id: str) -> str:
        """Create a one-off Checkout Session for a credit pack and return its URL."""
        if not self.is_configured:
            logger.error("❌ STRIPE_SECRET_KEY not configured!")
            raise PaymentError("Payments are not configured", status_code=503)

        credits = self.price_credits.get(price_id)
        if credits is None:
            logger.warning(f"⚠️ Checkout requested for unknown price: {price_id}")
            raise PaymentError("Unknown price ID")

        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": self.success_url,
            "cancel_url": self.cancel_url,
            "client_reference_id": user_id,
            "metadata": {"user_id": user_id, "credits": str(credits)},
        }
        if email:
            params["customer_email"] = email

        try:
            session = await asyncio.to_thread(stripe.checkout.Session.create, api_key=self.secret_key, **params)
        except stripe.StripeError as e:
            logger.error(f"❌ Error creating checkout session for {user_id}: {e}")
            raise PaymentError("Could not initiate the payment process. Please try again later.", status_code=502) from e

        logger.info(f"🛒 Checkout session {session['id']} created for {user_id} ({credits} credits)")
        return session["url"]

    async def handle_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the event signature and fulfil paid checkout sessions."""
        if not self.webhook_secret:
            logger.error("🔴 SECURITY: STRIPE_WEBHOOK_SECRET not configured!")
            raise PaymentError("Webhook authentication not configured", status_code=503)

        if not signature:
            raise PaymentError("Missing Stripe-Signature header")

        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
            event = json.loads(payload)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"⚠️ Invalid Stripe webhook: {e}")
            raise PaymentError("Invalid webhook signature") from e

        event_type = event["type"]
        logger.info(f"📥 Stripe webhook: {event_type}")

        if event_type != "checkout.session.completed":
            return {"success": True, "message": f"Event {event_type} ignored"}

        return await self.fulfill_checkout(event["data"]["object"])

    async def fulfill_checkout(self, session: Dict[str, Any]) -> Dict[str, Any]:
        """Credit the purchaser once per checkout session."""
        if session.get("payment_status") != "paid":
            logger.info(f"ℹ️ Checkout {session.get('id')} not paid yet: {session.get('payment_status')}")
            return {"success": True, "message": "Payment not completed"}

        metadata = session.get("metadata") or {}
        user_id = session.get("client_reference_id") or metadata.get("user_id")
        try:
            credits = int(metadata.get("credits", ""))
        except ValueError:
            credits = 0

        if not user_id or credits <= 0:
            logger.warning(f"⚠️ Checkout {session.get('id')} has no user or credit amount, skipped")
            return {"success": True, "message": "Nothing to credit"}

        try:
            applied = await self.ledger.increment(
                user_id,
                credits,
                reason="purchase",
                idempotency_key=f"stripe_{session['id']}",
            )
        except UserNotFoundError:
            logger.error(f"❌ Purchase for unknown user {user_id} (checkout {session['id']})")
            raise PaymentError("User not found", status_code=404)

        if not applied:
            return {"success": True, "message": "Already processed"}

        logger.info(f"✅ Webhook: Added {credits} credits to {user_id}")
        return {"success": True, "message": "Credits added", "credits_added": credits}
