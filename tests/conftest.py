import asyncio
import base64
import os
from typing import Dict, Optional

import pytest
from fastapi.testclient import TestClient

# Local backends only: no Firestore, no real model calls
os.environ.setdefault("LEDGER_BACKEND", "memory")
os.environ.setdefault("IMAGE_PROVIDER", "gemini")
os.environ.setdefault("GEMINI_API_KEY", "")

from reimagine.services.credit_ledger import MemoryLedger  # noqa: E402
from reimagine.services.edit_gate import EditGate  # noqa: E402
from reimagine.services.firebase_service import AuthenticatedUser, AuthenticationError  # noqa: E402
from reimagine.services.image_provider import EditedImage, ImageEditProvider  # noqa: E402

PNG_BYTES = b"\x89PNG\r\n\x1a\n-source-image"
EDITED_BYTES = b"\x89PNG\r\n\x1a\n-edited-image"
ALICE_TOKEN = "token-alice"
BOB_TOKEN = "token-bob"


class StaticTokenVerifier:
    """Accepts a fixed set of tokens."""

    def __init__(self, users: Dict[str, AuthenticatedUser]):
        self.users = users

    async def verify(self, token: str) -> AuthenticatedUser:
        try:
            return self.users[token]
        except KeyError:
            raise AuthenticationError("Invalid or expired token")


class ScriptedProvider(ImageEditProvider):
    """Returns `result`, or raises it if it is an exception."""

    name = "scripted"

    def __init__(self, result=None, delay: float = 0.0):
        self.result = result if result is not None else EditedImage(data=EDITED_BYTES, media_type="image/png")
        self.delay = delay
        self.calls = []
        self.started = asyncio.Event()

    @property
    def configured(self) -> bool:
        return True

    async def edit(self, image: bytes, media_type: str, instruction: str) -> EditedImage:
        self.calls.append((image, media_type, instruction))
        self.started.set()
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


def edit_payload(
    image: Optional[bytes] = PNG_BYTES,
    media_type: Optional[str] = "image/png",
    instruction: Optional[str] = "Make the sky a dramatic sunset",
) -> dict:
    payload = {}
    if image is not None:
        payload["image_data"] = base64.b64encode(image).decode("ascii")
    if media_type is not None:
        payload["media_type"] = media_type
    if instruction is not None:
        payload["instruction"] = instruction
    return payload


def bearer(token: str) -> str:
    return f"Bearer {token}"


@pytest.fixture
def verifier() -> StaticTokenVerifier:
    return StaticTokenVerifier({
        ALICE_TOKEN: AuthenticatedUser(uid="alice", email="alice@example.com"),
        BOB_TOKEN: AuthenticatedUser(uid="bob", email="bob@example.com"),
    })


@pytest.fixture
def ledger() -> MemoryLedger:
    return MemoryLedger(starting_credits=10)


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def gate(verifier, ledger, provider) -> EditGate:
    return EditGate(verifier=verifier, ledger=ledger, provider=provider, provider_timeout=5.0)


@pytest.fixture
def client(verifier, ledger, provider):
    from reimagine.deps import get_image_provider, get_ledger, get_token_verifier
    from reimagine.main import app

    app.dependency_overrides[get_token_verifier] = lambda: verifier
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_image_provider] = lambda: provider
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
