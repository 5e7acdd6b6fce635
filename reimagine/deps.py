"""Shared FastAPI dependencies."""
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException

from .config import get_settings
from .services.credit_ledger import CreditLedger, FirestoreLedger, MemoryLedger
from .services.edit_gate import EditGate, TokenVerifier
from .services.firebase_service import (
    AuthenticatedUser,
    AuthenticationError,
    FirebaseTokenVerifier,
    IdentityServiceError,
    get_firestore_client,
    parse_bearer_token,
)
from .services.image_provider import ImageEditProvider, create_image_provider
from .services.stripe_service import StripeService


@lru_cache()
def get_ledger() -> CreditLedger:
    settings = get_settings()
    if settings.LEDGER_BACKEND == "memory":
        return MemoryLedger(starting_credits=settings.STARTING_CREDITS)
    return FirestoreLedger(
        client_factory=get_firestore_client,
        collection=settings.USERS_COLLECTION,
        starting_credits=settings.STARTING_CREDITS,
    )


@lru_cache()
def get_token_verifier() -> TokenVerifier:
    return FirebaseTokenVerifier()


@lru_cache()
def get_image_provider() -> ImageEditProvider:
    return create_image_provider(get_settings())


def get_edit_gate(
    verifier: TokenVerifier = Depends(get_token_verifier),
    ledger: CreditLedger = Depends(get_ledger),
    provider: ImageEditProvider = Depends(get_image_provider),
) -> EditGate:
    settings = get_settings()
    return EditGate(
        verifier=verifier,
        ledger=ledger,
        provider=provider,
        provider_timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        max_image_bytes=settings.MAX_IMAGE_BYTES,
        max_instruction_chars=settings.MAX_INSTRUCTION_CHARS,
    )


def get_stripe_service(ledger: CreditLedger = Depends(get_ledger)) -> StripeService:
    settings = get_settings()
    return StripeService(
        ledger=ledger,
        secret_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        price_credits=settings.STRIPE_PRICE_CREDITS,
        success_url=settings.CHECKOUT_SUCCESS_URL,
        cancel_url=settings.CHECKOUT_CANCEL_URL,
    )


async def get_current_user(
    authorization: Optional[str] = Header(None),
    verifier: TokenVerifier = Depends(get_token_verifier),
) -> AuthenticatedUser:
    """Dependency: verify the Firebase ID token in the Authorization header."""
    try:
        return await verifier.verify(parse_bearer_token(authorization))
    except AuthenticationError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except IdentityServiceError as e:
        raise HTTPException(status_code=503, detail=str(e))
