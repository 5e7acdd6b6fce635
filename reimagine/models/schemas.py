"""
Reimagine Photos API - Pydantic Schemas
Request/Response models for all endpoints
"""
import base64
import binascii
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from ..config import ALLOWED_MEDIA_TYPES, MEDIA_TYPE_ALIASES


# ==================== EDIT ====================

class EditRequest(BaseModel):
    """
    Image edit request.
    Field names from the web client (base64Data, mimeType, prompt) are accepted as aliases.
    """
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    image_data: bytes = Field(
        ...,
        validation_alias=AliasChoices("image_data", "imageData", "base64Data"),
        description="Base64-encoded source image",
    )
    media_type: str = Field(
        ...,
        validation_alias=AliasChoices("media_type", "mediaType", "mimeType"),
        description="image/png, image/jpeg or image/webp",
    )
    instruction: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("instruction", "prompt"),
        description="Natural-language edit instruction",
    )

    @field_validator("image_data", mode="before")
    @classmethod
    def decode_image(cls, value):
        if not isinstance(value, str) or not value.strip():
            raise ValueError("image_data must be a non-empty base64 string")
        try:
            decoded = base64.b64decode(value.strip(), validate=True)
        except (ValueError, binascii.Error) as e:
            raise ValueError("image_data must be valid base64") from e
        if not decoded:
            raise ValueError("image_data decodes to an empty image")
        return decoded

    @field_validator("media_type")
    @classmethod
    def normalize_media_type(cls, value: str) -> str:
        media_type = value.lower()
        media_type = MEDIA_TYPE_ALIASES.get(media_type, media_type)
        if media_type not in ALLOWED_MEDIA_TYPES:
            raise ValueError(f"media_type must be one of {', '.join(ALLOWED_MEDIA_TYPES)}")
        return media_type


class EditResponse(BaseModel):
    success: bool = True
    image_data: str = Field(..., description="Base64-encoded edited image")
    media_type: str


class ErrorResponse(BaseModel):
    """Error response schema"""
    success: bool = False
    error_code: str
    message: str


# ==================== CREDITS ====================

class CreditBalanceResponse(BaseModel):
    success: bool
    credits: int
    user_id: str


class CheckoutRequest(BaseModel):
    price_id: str = Field(..., min_length=1, description="Stripe price ID of a credit pack")


class CheckoutResponse(BaseModel):
    success: bool
    url: str


class WebhookResponse(BaseModel):
    success: bool
    message: str
    credits_added: Optional[int] = None
