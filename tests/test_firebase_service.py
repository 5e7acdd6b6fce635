import pytest

from reimagine.services import firebase_service
from reimagine.services.firebase_service import (
    AuthenticatedUser,
    AuthenticationError,
    FirebaseTokenVerifier,
    IdentityServiceError,
    parse_bearer_token,
)

pytestmark = pytest.mark.asyncio


@pytest.fixture
def firebase_auth(monkeypatch):
    verified = []

    def verify_id_token(token):
        verified.append(token)
        if token != "valid-id-token":
            raise ValueError("Token expired")
        return {"uid": "alice", "email": "alice@example.com"}

    monkeypatch.setattr(firebase_service, "ensure_firebase_initialized", lambda: None)
    monkeypatch.setattr(firebase_service.auth, "verify_id_token", verify_id_token)
    return verified


async def test_parse_bearer_token():
    assert parse_bearer_token("Bearer abc.def.ghi") == "abc.def.ghi"
    assert parse_bearer_token("  Bearer   abc  ") == "abc"


@pytest.mark.parametrize("header", [None, "", "bearer abc", "Token abc", "Bearer "])
async def test_parse_bearer_token_rejects(header):
    with pytest.raises(AuthenticationError):
        parse_bearer_token(header)


async def test_verify_valid_token(firebase_auth):
    user = await FirebaseTokenVerifier().verify("valid-id-token")
    assert user == AuthenticatedUser(uid="alice", email="alice@example.com")


async def test_verify_rejected_token(firebase_auth):
    with pytest.raises(AuthenticationError, match="Invalid or expired token"):
        await FirebaseTokenVerifier().verify("expired-id-token")
    assert firebase_auth == ["expired-id-token"]


async def test_verify_when_admin_sdk_cannot_start(monkeypatch):
    def broken_init():
        raise ValueError("Invalid service account certificate")

    monkeypatch.setattr(firebase_service, "ensure_firebase_initialized", broken_init)

    with pytest.raises(IdentityServiceError):
        await FirebaseTokenVerifier().verify("valid-id-token")
