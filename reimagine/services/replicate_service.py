"""
Reimagine Photos - Replicate Image Edit Service
Instruction-based image editing through a Replicate model (FLUX Kontext by default).
"""
import asyncio
import base64
from typing import Any, Dict, Optional

import httpx
import replicate
from loguru import logger

from .image_provider import (
    EditedImage,
    ImageEditProvider,
    ProviderRefusal,
    ProviderTimeout,
    ProviderUnavailable,
)

OUTPUT_FORMATS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "jpg",
}


def to_data_uri(image: bytes, media_type: str) -> str:
    return f"data:{media_type};base64,{base64.b64encode(image).decode('ascii')}"


def extract_output_url(output: Any) -> Optional[str]:
    """Normalize model output (FileOutput, str, list, iterator) to a single URL."""
    # If it's a generator, consume it first
    if hasattr(output, '__next__'):
        output = list(output)

    if isinstance(output, (list, tuple)):
        if not output:
            return None
        output = output[0]

    if output is None:
        return None
    if isinstance(output, str):
        return output
    if hasattr(output, 'url'):
        return str(output.url)

    url = str(output)
    return url if url.startswith('http') else None


class ReplicateService(ImageEditProvider):
    """Image edits through the Replicate API."""

    name = "replicate"

    def __init__(self, api_token: str, model: str, timeout_seconds: float):
        self.api_token = api_token
        self.model = model
        self.timeout_seconds = timeout_seconds
        self._client: Optional[replicate.Client] = None

    @property
    def configured(self) -> bool:
        return bool(self.api_token)

    @property
    def client(self) -> replicate.Client:
        if self._client is None:
            self._client = replicate.Client(api_token=self.api_token, timeout=self.timeout_seconds)
        return self._client

    def _prepare_inputs(self, image: bytes, media_type: str, instruction: str) -> Dict[str, Any]:
        return {
            "prompt": instruction,
            "input_image": to_data_uri(image, media_type),
            "output_format": OUTPUT_FORMATS.get(media_type, "png"),
        }

    async def _make_request(self, inputs: Dict[str, Any]) -> Any:
        """Run the prediction; the Replicate client is blocking."""
        try:
            logger.info(f"[REPLICATE] Running {self.model}")
            return await asyncio.to_thread(self.client.run, self.model, input=inputs)
        except replicate.exceptions.ModelError as e:
            # Prediction ran and failed: includes content-moderation rejections
            logger.error(f"Replicate model error: {e}")
            raise ProviderRefusal(f"The AI model could not edit this image: {e}") from e
        except replicate.exceptions.ReplicateException as e:
            logger.error(f"Replicate API error: {e}")
            raise ProviderUnavailable(f"Replicate API error: {e}") from e
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"Replicate request timed out: {e}") from e
        except httpx.HTTPError as e:
            logger.error(f"Replicate transport error: {e}")
            raise ProviderUnavailable(f"Replicate transport error: {e}") from e

    async def _download(self, url: str, fallback_media_type: str) -> EditedImage:
        try:
            async with httpx.AsyncClient(timeout=60.0) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"Downloading edited image timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"Downloading edited image failed: {e}") from e

        if not response.content:
            raise ProviderRefusal("The AI model returned an empty image")

        content_type = response.headers.get("content-type", "").split(";")[0].strip()
        media_type = content_type if content_type.startswith("image/") else fallback_media_type
        return EditedImage(data=response.content, media_type=media_type)

    async def edit(self, image: bytes, media_type: str, instruction: str) -> EditedImage:
        if not self.configured:
            logger.error("FATAL: REPLICATE_API_TOKEN is not configured")
            raise ProviderUnavailable("Image processing service is not configured")

        inputs = self._prepare_inputs(image, media_type, instruction)
        output = await self._make_request(inputs)

        url = extract_output_url(output)
        if not url:
            logger.warning(f"[REPLICATE] No image in output: {output!r}")
            raise ProviderRefusal("No image returned. The request may have been blocked for safety reasons.")

        output_format = inputs["output_format"]
        fallback = "image/png" if output_format == "png" else "image/jpeg"
        edited = await self._download(url, fallback)
        logger.info(f"[REPLICATE] Returned {len(edited.data)} bytes ({edited.media_type})")
        return edited
