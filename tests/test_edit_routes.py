"""HTTP surface of the edit endpoint."""
import asyncio
import base64

import pytest
from httpx import ASGITransport, AsyncClient

from reimagine.deps import get_image_provider, get_ledger, get_token_verifier
from reimagine.main import app
from reimagine.services.image_provider import ProviderRefusal, ProviderUnavailable

from .conftest import ALICE_TOKEN, BOB_TOKEN, EDITED_BYTES, bearer, edit_payload

EDIT_URL = "/api/v1/edit"


def test_edit_success(client, ledger):
    ledger.seed("alice", 1)

    response = client.post(EDIT_URL, json=edit_payload(), headers={"Authorization": bearer(ALICE_TOKEN)})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["media_type"] == "image/png"
    assert base64.b64decode(body["image_data"]) == EDITED_BYTES
    assert ledger.history("alice")[-1]["balance_after"] == 0


def test_edit_without_credits_is_payment_required(client, ledger, provider):
    ledger.seed("alice", 0)

    response = client.post(EDIT_URL, json=edit_payload(), headers={"Authorization": bearer(ALICE_TOKEN)})

    assert response.status_code == 402
    assert response.json() == {
        "success": False,
        "error_code": "NO_CREDIT",
        "message": "Payment Required: You are out of credits.",
    }
    assert provider.calls == []


def test_edit_without_token(client, ledger):
    ledger.seed("alice", 2)

    response = client.post(EDIT_URL, json=edit_payload())

    assert response.status_code == 401
    assert response.json()["error_code"] == "UNAUTHENTICATED"
    assert ledger.history("alice") == []


def test_edit_with_rejected_token(client):
    response = client.post(EDIT_URL, json=edit_payload(), headers={"Authorization": bearer("forged")})
    assert response.status_code == 401


def test_edit_with_unparseable_body(client, ledger):
    ledger.seed("alice", 2)

    response = client.post(
        EDIT_URL,
        content=b"{not json",
        headers={"Authorization": bearer(ALICE_TOKEN), "Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["error_code"] == "INVALID_PAYLOAD"
    assert ledger.history("alice") == []


def test_edit_with_unsupported_media_type(client, ledger):
    ledger.seed("alice", 2)

    response = client.post(
        EDIT_URL,
        json=edit_payload(media_type="image/gif"),
        headers={"Authorization": bearer(ALICE_TOKEN)},
    )

    assert response.status_code == 400
    assert "media_type" in response.json()["message"]
    assert ledger.history("alice") == []


def test_edit_without_profile(client):
    response = client.post(EDIT_URL, json=edit_payload(), headers={"Authorization": bearer(BOB_TOKEN)})

    assert response.status_code == 400
    assert response.json()["error_code"] == "PROFILE_MISSING"


def test_provider_failure_restores_balance(client, ledger, provider):
    ledger.seed("alice", 1)
    provider.result = ProviderUnavailable("upstream 500")

    response = client.post(EDIT_URL, json=edit_payload(), headers={"Authorization": bearer(ALICE_TOKEN)})

    assert response.status_code == 503
    assert response.json() == {
        "success": False,
        "error_code": "PROVIDER_FAILURE",
        "message": "Image processing service is currently unavailable.",
    }
    assert [e["type"] for e in ledger.history("alice")] == ["deduct", "refund"]
    assert ledger.history("alice")[-1]["balance_after"] == 1


def test_refusal_text_is_returned_to_caller(client, ledger, provider):
    ledger.seed("alice", 1)
    provider.result = ProviderRefusal("Prompt blocked by safety filter: SAFETY")

    response = client.post(EDIT_URL, json=edit_payload(), headers={"Authorization": bearer(ALICE_TOKEN)})

    assert response.status_code == 503
    assert response.json()["message"] == "Prompt blocked by safety filter: SAFETY"


def test_cors_preflight_for_allowed_origin(client):
    response = client.options(
        EDIT_URL,
        headers={
            "Origin": "https://reimaginephotos.app",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "authorization,content-type",
        },
    )

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "https://reimaginephotos.app"
    assert "POST" in response.headers["access-control-allow-methods"]


def test_cors_preflight_for_unknown_origin(client):
    response = client.options(
        EDIT_URL,
        headers={
            "Origin": "https://evil.example.com",
            "Access-Control-Request-Method": "POST",
        },
    )

    assert response.status_code == 400
    assert "access-control-allow-origin" not in response.headers


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["ledger_backend"] == "memory"
    assert body["image_provider"] == "gemini"
    assert body["provider_configured"] is False


def test_root(client):
    response = client.get("/")
    assert response.json()["service"] == "Reimagine Photos API"


@pytest.mark.asyncio
async def test_concurrent_edits_over_http(verifier, ledger, provider):
    ledger.seed("alice", 2)
    app.dependency_overrides[get_token_verifier] = lambda: verifier
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_image_provider] = lambda: provider
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            responses = await asyncio.gather(*(
                ac.post(EDIT_URL, json=edit_payload(), headers={"Authorization": bearer(ALICE_TOKEN)})
                for _ in range(5)
            ))
    finally:
        app.dependency_overrides.clear()

    assert sorted(r.status_code for r in responses) == [200, 200, 402, 402, 402]
    assert len(provider.calls) == 2
    assert ledger.history("alice")[-1]["balance_after"] == 0


def test_inflight_edits_live_on_app_state(client, ledger):
    ledger.seed("alice", 1)

    client.post(EDIT_URL, json=edit_payload(), headers={"Authorization": bearer(ALICE_TOKEN)})

    assert client.app.state.inflight_edits == set()
