"""
Reimagine Photos - Edit Request Gate
Pay-per-use access to the image edit provider.

Every request walks the same path:

    authenticate -> validate -> reserve credit -> invoke provider
                                                   |-> success: keep the spend
                                                   '-> any failure: refund

Nothing before the reservation touches the ledger, and every failure after it
goes through one except-branch that refunds the reserved credit.
"""
import asyncio
import base64
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol, Union

from loguru import logger
from pydantic import ValidationError

from ..models.schemas import EditRequest
from .credit_ledger import CreditLedger, LedgerError, UserNotFoundError
from .firebase_service import AuthenticatedUser, AuthenticationError, IdentityServiceError, parse_bearer_token
from .image_provider import EditedImage, ImageEditProvider, ProviderError, ProviderRefusal


class FailureCode(str, Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    NO_CREDIT = "NO_CREDIT"
    PROFILE_MISSING = "PROFILE_MISSING"
    PROVIDER_FAILURE = "PROVIDER_FAILURE"
    LEDGER_UNAVAILABLE = "LEDGER_UNAVAILABLE"
    AUTH_UNAVAILABLE = "AUTH_UNAVAILABLE"


STATUS_CODES = {
    FailureCode.UNAUTHENTICATED: 401,
    FailureCode.INVALID_PAYLOAD: 400,
    FailureCode.NO_CREDIT: 402,  # Payment Required
    FailureCode.PROFILE_MISSING: 400,
    FailureCode.PROVIDER_FAILURE: 503,
    FailureCode.LEDGER_UNAVAILABLE: 503,
    FailureCode.AUTH_UNAVAILABLE: 503,
}


@dataclass
class EditResult:
    user_id: str
    image: EditedImage

    @property
    def image_base64(self) -> str:
        return base64.b64encode(self.image.data).decode("ascii")


@dataclass
class EditFailure:
    code: FailureCode
    message: str
    refunded: bool = False
    reason: Optional[str] = None
    user_id: Optional[str] = None

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.code]


EditOutcome = Union[EditResult, EditFailure]


class TokenVerifier(Protocol):
    async def verify(self, token: str) -> AuthenticatedUser:
        ...


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0]
    field = ".".join(str(loc) for loc in first.get("loc", ())) or "body"
    return f"Bad Request: {field}: {first.get('msg', 'invalid value')}"


def describe_provider_failure(error: BaseException) -> str:
    """Short internal reason for logs and the credit_history refund entry."""
    if isinstance(error, asyncio.TimeoutError):
        return "timeout"
    if isinstance(error, ProviderError):
        return error.reason
    return "unexpected_error"


def provider_failure_message(error: BaseException) -> str:
    """Caller-facing message; refusal text is safe to show, transport details are not."""
    if isinstance(error, ProviderRefusal):
        return str(error)
    if describe_provider_failure(error) == "timeout":
        return "Image processing timed out. Your credit has been refunded."
    return "Image processing service is currently unavailable."


class EditGate:
    """
    Orchestrates a single edit request. Holds no per-request state, so one
    instance serves any number of concurrent requests.
    """

    def __init__(
        self,
        verifier: TokenVerifier,
        ledger: CreditLedger,
        provider: ImageEditProvider,
        provider_timeout: float = 280.0,
        max_image_bytes: int = 15 * 1024 * 1024,
        max_instruction_chars: int = 2000,
    ):
        self.verifier = verifier
        self.ledger = ledger
        self.provider = provider
        self.provider_timeout = provider_timeout
        self.max_image_bytes = max_image_bytes
        self.max_instruction_chars = max_instruction_chars

    async def handle(self, authorization: Optional[str], payload: Any) -> EditOutcome:
        # 1. Authenticate
        try:
            token = parse_bearer_token(authorization)
            user = await self.verifier.verify(token)
        except AuthenticationError as e:
            logger.warning(f"🚫 Rejected unauthenticated edit request: {e}")
            return EditFailure(FailureCode.UNAUTHENTICATED, "Unauthorized: Invalid token.")
        except IdentityServiceError as e:
            logger.error(f"❌ Could not authenticate edit request: {e}")
            return EditFailure(
                FailureCode.AUTH_UNAVAILABLE,
                "Authentication service is temporarily unavailable. No credit was used.",
            )

        user_id = user.uid

        # 2. Validate before any ledger access
        try:
            request = self.validate(payload)
        except ValueError as e:
            logger.warning(f"🚫 Invalid edit payload from {user_id}: {e}")
            return EditFailure(FailureCode.INVALID_PAYLOAD, str(e), user_id=user_id)

        # 3. Reserve one credit
        try:
            reserved = await self.ledger.try_decrement(user_id)
        except UserNotFoundError:
            logger.warning(f"🚫 User profile not found: {user_id}")
            return EditFailure(
                FailureCode.PROFILE_MISSING,
                "User validation failed: User profile not found.",
                user_id=user_id,
            )
        except LedgerError as e:
            logger.error(f"❌ Credit reservation failed for {user_id}: {e}")
            return EditFailure(
                FailureCode.LEDGER_UNAVAILABLE,
                "Credit service is temporarily unavailable. No credit was used.",
                user_id=user_id,
            )

        if not reserved:
            return EditFailure(
                FailureCode.NO_CREDIT,
                "Payment Required: You are out of credits.",
                user_id=user_id,
            )

        # 4. Invoke provider; 5. refund on any failure
        try:
            edited = await asyncio.wait_for(
                self.provider.edit(request.image_data, request.media_type, request.instruction),
                timeout=self.provider_timeout,
            )
        except asyncio.CancelledError:
            await self._refund(user_id, "cancelled")
            raise
        except Exception as e:
            reason = describe_provider_failure(e)
            logger.error(f"❌ {self.provider.name} processing failed for {user_id} ({reason}): {e}")
            refunded = await self._refund(user_id, reason)
            return EditFailure(
                FailureCode.PROVIDER_FAILURE,
                provider_failure_message(e),
                refunded=refunded,
                reason=reason,
                user_id=user_id,
            )

        logger.info(f"🎨 Edit succeeded for {user_id} via {self.provider.name}")
        return EditResult(user_id=user_id, image=edited)

    def validate(self, payload: Any) -> EditRequest:
        """Raises ValueError with a caller-facing message."""
        if not isinstance(payload, dict):
            raise ValueError("Bad Request: body must be a JSON object with 'image_data', 'media_type' and 'instruction'.")

        try:
            request = EditRequest.model_validate(payload)
        except ValidationError as e:
            raise ValueError(_validation_message(e)) from e

        if len(request.image_data) > self.max_image_bytes:
            raise ValueError(f"Bad Request: image is larger than {self.max_image_bytes // (1024 * 1024)}MB.")
        if len(request.instruction) > self.max_instruction_chars:
            raise ValueError(f"Bad Request: instruction is longer than {self.max_instruction_chars} characters.")
        return request

    async def _refund(self, user_id: str, reason: str) -> bool:
        try:
            await self.ledger.increment(user_id, 1, reason=f"refund_{reason}")
        except Exception as e:
            # The credit is lost until someone restores it by hand
            logger.critical(f"🔴 REFUND FAILED for {user_id} after provider failure ({reason}): {e}")
            return False

        logger.info(f"💰 Credit refunded to {user_id} due to processing error ({reason})")
        return True
