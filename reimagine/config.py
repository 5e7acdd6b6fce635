"""
Reimagine Photos Configuration
Environment variables and settings
"""
from pydantic_settings import BaseSettings
from typing import Dict, List
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # App Config
    APP_NAME: str = "Reimagine Photos API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Server Config
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # CORS - Allowed origins (comma-separated)
    ALLOWED_ORIGINS: str = "https://reimaginephotos.app,https://nanobanana-image-app.web.app"

    # Credit ledger
    LEDGER_BACKEND: str = "firestore"  # "firestore" or "memory"
    USERS_COLLECTION: str = "users"
    STARTING_CREDITS: int = 10

    # Firebase Admin credentials (JSON string or path to the key file)
    FIREBASE_SERVICE_ACCOUNT: str = ""
    FIREBASE_SERVICE_ACCOUNT_PATH: str = "firebase-service-account.json"

    # Image edit provider
    IMAGE_PROVIDER: str = "gemini"  # "gemini" or "replicate"
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-2.5-flash-image"
    REPLICATE_API_TOKEN: str = ""
    REPLICATE_EDIT_MODEL: str = "black-forest-labs/flux-kontext-pro"

    # Edit request limits
    PROVIDER_TIMEOUT_SECONDS: float = 280.0
    MAX_IMAGE_BYTES: int = 15 * 1024 * 1024
    MAX_INSTRUCTION_CHARS: int = 2000

    # Stripe (hosted checkout + purchase fulfillment)
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_PRICE_CREDITS: Dict[str, int] = {}  # JSON in env: {"price_123": 50}
    CHECKOUT_SUCCESS_URL: str = "https://reimaginephotos.app/?checkout=success"
    CHECKOUT_CANCEL_URL: str = "https://reimaginephotos.app/?checkout=cancel"

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def allowed_origins(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# ══════════════════════════════════════════════════════════════════════════════
# MEDIA TYPES - what the edit endpoint accepts
# ══════════════════════════════════════════════════════════════════════════════
ALLOWED_MEDIA_TYPES = ("image/png", "image/jpeg", "image/webp")

MEDIA_TYPE_ALIASES = {
    "png": "image/png",
    "jpeg": "image/jpeg",
    "jpg": "image/jpeg",
    "image/jpg": "image/jpeg",
    "webp": "image/webp",
}
