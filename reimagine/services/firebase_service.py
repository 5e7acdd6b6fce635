"""
Reimagine Photos - Firebase Service
Firebase Admin SDK bootstrap and ID token verification
"""
import asyncio
import json
import os
from dataclasses import dataclass
from typing import Optional

import firebase_admin
from firebase_admin import auth, credentials, firestore
from loguru import logger

from ..config import get_settings


class AuthenticationError(Exception):
    """Bearer credential is missing, malformed or rejected by the verifier."""


class IdentityServiceError(Exception):
    """The Admin SDK could not be initialized, so no token can be checked."""


@dataclass(frozen=True)
class AuthenticatedUser:
    uid: str
    email: Optional[str] = None


def ensure_firebase_initialized():
    """Ensure Firebase Admin SDK is initialized."""
    try:
        firebase_admin.get_app()
    except ValueError:
        settings = get_settings()

        if settings.FIREBASE_SERVICE_ACCOUNT:
            try:
                creds_dict = json.loads(settings.FIREBASE_SERVICE_ACCOUNT)
                cred = credentials.Certificate(creds_dict)
                firebase_admin.initialize_app(cred)
                logger.info("Firebase Admin SDK initialized from FIREBASE_SERVICE_ACCOUNT")
            except Exception as e:
                logger.error(f"Failed to initialize Firebase: {e}")
                raise
        elif os.path.exists(settings.FIREBASE_SERVICE_ACCOUNT_PATH):
            cred = credentials.Certificate(settings.FIREBASE_SERVICE_ACCOUNT_PATH)
            firebase_admin.initialize_app(cred)
            logger.info(f"Firebase Admin SDK initialized from file: {settings.FIREBASE_SERVICE_ACCOUNT_PATH}")
        else:
            # Application default credentials (Cloud Run / Functions runtime)
            firebase_admin.initialize_app()
            logger.info("Firebase Admin SDK initialized with application default credentials")


def get_firestore_client():
    """Get Firestore client, initializing Firebase if needed."""
    ensure_firebase_initialized()
    return firestore.client()


def parse_bearer_token(authorization: Optional[str]) -> str:
    """
    Extract the token from an "Authorization: Bearer <token>" header value.
    Raises AuthenticationError if the header is absent or malformed.
    """
    if not authorization:
        raise AuthenticationError("No Bearer token provided")

    scheme, _, token = authorization.strip().partition(" ")
    if scheme != "Bearer" or not token.strip():
        raise AuthenticationError("Invalid authorization header")

    return token.strip()


class FirebaseTokenVerifier:
    """Verifies Firebase ID tokens with the Admin SDK."""

    async def verify(self, token: str) -> AuthenticatedUser:
        try:
            ensure_firebase_initialized()
        except Exception as e:
            logger.critical(f"🔴 Firebase Admin SDK unavailable: {e}")
            raise IdentityServiceError("Authentication service is not available") from e

        try:
            decoded_token = await asyncio.to_thread(auth.verify_id_token, token)
        except Exception as e:
            logger.error(f"❌ Token verification failed: {e}")
            raise AuthenticationError("Invalid or expired token") from e

        user_id = decoded_token["uid"]
        logger.info(f"🔐 Token verified for user: {user_id}")
        return AuthenticatedUser(uid=user_id, email=decoded_token.get("email"))
