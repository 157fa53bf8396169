"""
Shared fixtures for the Storm Gate test suite.

The environment is seeded before any stormgate module is imported, because
stormgate.main builds an application at import time.
"""

import json
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs

TENANT_ID = "11111111-2222-3333-4444-555555555555"
CLIENT_ID = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"

os.environ.update({
    "AZURE_TENANT_ID": TENANT_ID,
    "AZURE_CLIENT_ID": CLIENT_ID,
    "AZURE_CLIENT_SECRET": "test-client-secret",
    "AZURE_REDIRECT_URI": "http://localhost:3001/auth/callback",
    "ACCESS_TOKEN_SECRET": "test-access-token-secret-0123456789abcdef",
    "REFRESH_TOKEN_SECRET": "test-refresh-token-secret-0123456789abcdef",
    "JWT_SECRET": "test-shared-jwt-secret-0123456789abcdefgh",
    "BASE_URL": "http://localhost:3001",
    "EMAIL_INTEGRATOR_BASE_URL": "http://email-integrator.test",
    "ADMIN_EMAIL": "admin@stormgate.com",
    "ALLOWED_ORIGINS": "http://localhost:3000,https://app",
    "ENVIRONMENT": "test",
    "LOG_LEVEL": "DEBUG",
})

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from jwt.algorithms import RSAAlgorithm

from stormgate.config import Settings, get_settings

get_settings.cache_clear()

TEST_KID = "test-key-id-2024"
V2_ISSUER = f"https://login.microsoftonline.com/{TENANT_ID}/v2.0"
V1_ISSUER = f"https://sts.windows.net/{TENANT_ID}/"


# Test RSA key pair generation for mocking JWKS
def generate_test_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


TEST_PRIVATE_KEY = generate_test_key()
OTHER_PRIVATE_KEY = generate_test_key()


def create_mock_jwks(kid: str = TEST_KID, private_key=TEST_PRIVATE_KEY) -> Dict[str, Any]:
    """JWKS document publishing the public half of private_key under kid."""
    jwk = RSAAlgorithm.to_jwk(private_key.public_key(), as_dict=True)
    jwk["kid"] = kid
    jwk["use"] = "sig"
    return {"keys": [jwk]}


def create_azure_token(
    sub: str = "azure-subject-123",
    email: Optional[str] = "federated.user@contoso.com",
    name: str = "Federated User",
    aud: str = CLIENT_ID,
    iss: str = V2_ISSUER,
    kid: str = TEST_KID,
    private_key=TEST_PRIVATE_KEY,
    exp_delta_minutes: int = 60,
    **extra: Any,
) -> str:
    """Create a mock Azure AD token signed with a test private key."""
    now = datetime.now(timezone.utc)
    payload = {
        "iss": iss,
        "sub": sub,
        "oid": sub,
        "aud": aud,
        "iat": now,
        "nbf": now,
        "exp": now + timedelta(minutes=exp_delta_minutes),
        "name": name,
    }
    if email:
        payload["email"] = email
    payload.update(extra)
    return jwt.encode(payload, private_key, algorithm="RS256", headers={"kid": kid})


class FakeProvider:
    """
    Stands in for Azure AD (JWKS + token endpoint) and the email integrator.

    Use `transport` as the httpx transport for both.
    """

    def __init__(self) -> None:
        self.jwks: Dict[str, Any] = create_mock_jwks()
        self.id_token: Optional[str] = create_azure_token()
        self.token_status = 200
        self.email_status = 200
        self.jwks_requests = 0
        self.token_requests: List[Dict[str, List[str]]] = []
        self.emails: List[Dict[str, Any]] = []
        self.transport = httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/discovery/v2.0/keys"):
            self.jwks_requests += 1
            return httpx.Response(200, json=self.jwks)

        if path.endswith("/oauth2/v2.0/token"):
            self.token_requests.append(parse_qs(request.content.decode()))
            if self.token_status != 200:
                return httpx.Response(
                    self.token_status,
                    json={"error": "invalid_grant", "error_description": "AADSTS70008: code expired"},
                )
            body: Dict[str, Any] = {"access_token": "provider-access-token", "token_type": "Bearer"}
            if self.id_token:
                body["id_token"] = self.id_token
            return httpx.Response(200, json=body)

        if path == "/auth/send-email":
            self.emails.append(json.loads(request.content))
            return httpx.Response(self.email_status, json={"messageId": "email-sent"})

        return httpx.Response(404)

    def emails_of_type(self, template_type: str) -> List[Dict[str, Any]]:
        return [e for e in self.emails if e["templateType"] == template_type]


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def app(settings, provider):
    from stormgate.main import create_app

    return create_app(
        settings,
        provider_transport=provider.transport,
        notifier_transport=provider.transport,
    )


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


def register_user(
    client: TestClient,
    email: str = "a@x.com",
    password: str = "correct-horse",
    **fields: Any,
) -> httpx.Response:
    body = {"name": "Alice Example", "email": email, "password": password}
    body.update(fields)
    return client.post("/register", json=body)


def make_admin(app, email: str = "root@x.com") -> str:
    """Create an admin account directly in the store and return a bearer token for it."""
    import asyncio

    from stormgate.models import Role

    async def create():
        return await app.state.user_store.create(
            name="Root Admin",
            email=email,
            password_hash="x",
            role=Role.ADMIN,
        )

    user = asyncio.run(create())
    return app.state.tokens.issue_access_token({
        "id": user.id,
        "email": user.email,
        "role": user.role.value,
        "application": user.application,
    })
