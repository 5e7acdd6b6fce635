"""
Reimagine Photos - Gemini Image Edit Service
Instruction-based image editing with the Gemini image model (google-genai).
"""
import asyncio
import base64
from typing import Any, List, Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from loguru import logger

from .image_provider import (
    EditedImage,
    ImageEditProvider,
    ProviderRefusal,
    ProviderTimeout,
    ProviderUnavailable,
)

BLOCKED_FINISH_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "IMAGE_SAFETY", "RECITATION"}

DEFAULT_REFUSAL = "No image returned. The request may have been blocked for safety reasons."


def _enum_name(value: Any) -> str:
    return getattr(value, "name", None) or str(value or "")


def extract_edited_image(response: Any) -> EditedImage:
    """
    Pull the first inline image out of a generate_content response.
    Raises ProviderRefusal when the prompt was blocked or the model answered
    with text only.
    """
    prompt_feedback = getattr(response, "prompt_feedback", None)
    block_reason = getattr(prompt_feedback, "block_reason", None)
    if block_reason:
        raise ProviderRefusal(f"Prompt blocked by safety filter: {_enum_name(block_reason)}")

    collected_text: List[str] = []

    for candidate in getattr(response, "candidates", None) or []:
        finish_reason = _enum_name(getattr(candidate, "finish_reason", None))
        if finish_reason in BLOCKED_FINISH_REASONS:
            raise ProviderRefusal(f"Generation blocked: {finish_reason}")

        content = getattr(candidate, "content", None)
        if not content:
            continue

        for part in getattr(content, "parts", None) or []:
            text_part = getattr(part, "text", None)
            if text_part:
                collected_text.append(text_part)

            inline_data = getattr(part, "inline_data", None)
            raw_data = getattr(inline_data, "data", None)
            if not raw_data:
                continue

            if isinstance(raw_data, str):
                image_bytes = base64.b64decode(raw_data)
            else:
                image_bytes = bytes(raw_data)

            mime_type = getattr(inline_data, "mime_type", None) or "image/png"
            return EditedImage(data=image_bytes, media_type=mime_type)

    text = "".join(collected_text).strip() or DEFAULT_REFUSAL
    raise ProviderRefusal(f'The AI model responded with text instead of an image: "{text[:300]}"')


class GeminiService(ImageEditProvider):
    """Image edits through the Gemini API."""

    name = "gemini"

    def __init__(self, api_key: str, model: str, timeout_seconds: float):
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self._client: Optional[genai.Client] = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            # google-genai expects timeout in milliseconds.
            http_options = types.HttpOptions(timeout=int(self.timeout_seconds * 1000))
            self._client = genai.Client(api_key=self.api_key, http_options=http_options)
        return self._client

    async def edit(self, image: bytes, media_type: str, instruction: str) -> EditedImage:
        if not self.configured:
            logger.error("FATAL: GEMINI_API_KEY is not configured")
            raise ProviderUnavailable("Image processing service is not configured")

        logger.info(f"[GEMINI] Running {self.model} ({len(image)} bytes, {media_type})")

        try:
            response = await asyncio.to_thread(
                self.client.models.generate_content,
                model=self.model,
                contents=[
                    types.Content(
                        role="user",
                        parts=[
                            types.Part.from_bytes(data=image, mime_type=media_type),
                            types.Part.from_text(text=instruction),
                        ],
                    )
                ],
                config=types.GenerateContentConfig(
                    response_modalities=["IMAGE", "TEXT"],
                ),
            )
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"Gemini request timed out: {e}") from e
        except genai_errors.APIError as e:
            logger.error(f"Gemini API error: {e}")
            raise ProviderUnavailable(f"Gemini API error: {e.code}") from e
        except httpx.HTTPError as e:
            logger.error(f"Gemini transport error: {e}")
            raise ProviderUnavailable(f"Gemini transport error: {e}") from e

        edited = extract_edited_image(response)
        logger.info(f"[GEMINI] Returned {len(edited.data)} bytes ({edited.media_type})")
        return edited
