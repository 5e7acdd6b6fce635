"""
Reimagine Photos - Image Edit Provider
Common contract for the generative image-edit backends.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass

from ..config import Settings


@dataclass
class EditedImage:
    data: bytes
    media_type: str


class ProviderError(Exception):
    """The provider did not return an edited image."""

    reason = "provider_error"


class ProviderRefusal(ProviderError):
    """Text-only answer or safety block instead of an image."""

    reason = "refused"


class ProviderTimeout(ProviderError):
    reason = "timeout"


class ProviderUnavailable(ProviderError):
    """Transport/server error, or the provider is not configured."""

    reason = "unavailable"


class ImageEditProvider(ABC):
    name = "base"

    @property
    @abstractmethod
    def configured(self) -> bool:
        ...

    @abstractmethod
    async def edit(self, image: bytes, media_type: str, instruction: str) -> EditedImage:
        """
        Apply `instruction` to `image`.
        Returns the edited image or raises a ProviderError subclass.
        """


def create_image_provider(settings: Settings) -> ImageEditProvider:
    """Build the provider selected by IMAGE_PROVIDER."""
    if settings.IMAGE_PROVIDER == "replicate":
        from .replicate_service import ReplicateService
        return ReplicateService(
            api_token=settings.REPLICATE_API_TOKEN,
            model=settings.REPLICATE_EDIT_MODEL,
            timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
        )
    if settings.IMAGE_PROVIDER == "gemini":
        from .gemini_service import GeminiService
        return GeminiService(
            api_key=settings.GEMINI_API_KEY,
            model=settings.GEMINI_MODEL,
            timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
        )
    raise ValueError(f"Unknown IMAGE_PROVIDER: {settings.IMAGE_PROVIDER}")
