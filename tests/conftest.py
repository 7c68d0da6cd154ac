"""Shared fixtures for wallet selector tests."""

import base64
import json

import pytest
import respx

from wallet_selector.models import WalletDescriptor


VERIFIER_CLIENT_ID = "https://verifier.example.com"
REQUEST_URI = "https://verifier.example.com/requests/abc123"
WALLET_URL = "https://wallet.example.com/authorize"

PRESENTATION_DEFINITION = {
    "id": "pd-1",
    "input_descriptors": [
        {
            "id": "pid",
            "constraints": {"fields": [{"path": ["$.given_name"]}]},
        }
    ],
}


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def make_jwt(payload: dict, header: dict | None = None, signature: str = "c2lnbmF0dXJl") -> str:
    """Build a compact JWS with an opaque signature segment."""
    if header is None:
        header = {"alg": "ES256", "typ": "oauth-authz-req+jwt", "kid": "key-1"}
    return ".".join([
        b64url(json.dumps(header).encode()),
        b64url(json.dumps(payload).encode()),
        signature,
    ])


def authorization_request(**overrides) -> dict:
    """A valid by-value OpenID4VP authorization request."""
    request = {
        "client_id": VERIFIER_CLIENT_ID,
        "response_type": "vp_token",
        "response_mode": "direct_post",
        "response_uri": "https://verifier.example.com/callback",
        "nonce": "n-0S6_WzA2Mj",
        "presentation_definition": PRESENTATION_DEFINITION,
    }
    request.update(overrides)
    return {k: v for k, v in request.items() if v is not None}


def wallet_response(**overrides) -> dict:
    """A valid OpenID4VP wallet response."""
    response = {
        "vp_token": "eyJhbGciOiJFUzI1NiJ9.eyJ2cCI6e319.sig",
        "presentation_submission": {
            "id": "submission-1",
            "definition_id": "pd-1",
            "descriptor_map": [
                {"id": "pid", "format": "jwt_vp", "path": "$"},
            ],
        },
    }
    response.update(overrides)
    return response


def make_wallet(wallet_id: str, protocols=("openid4vp",), enabled: bool = True) -> WalletDescriptor:
    return WalletDescriptor(
        id=wallet_id,
        url=f"https://{wallet_id}.example.com/authorize",
        protocols=frozenset(protocols),
        enabled=enabled,
        name=wallet_id.title(),
    )


@pytest.fixture
def mock_http():
    """Create a respx mock for outbound fetches."""
    with respx.mock(assert_all_called=False) as mock:
        yield mock


@pytest.fixture
def wallets():
    """Two OpenID4VP wallets, one disabled one, and an mdoc-only wallet."""
    return [
        make_wallet("alpha"),
        make_wallet("beta", protocols=("openid4vp", "w3c-vc")),
        make_wallet("gamma", enabled=False),
        make_wallet("delta", protocols=("mdoc-openid4vp",)),
    ]
