"""
tests/conftest.py -- Shared test fixtures for the QR login tests.

This module provides:
  - FakeAuthority: in-process stand-in for the identity authority with the
    same method signatures and Ok/Err results as identity.authority
  - store / authority / settings / issuer / redeemer: per-test unit fixtures
  - api_client: TestClient over the assembled ASGI app with a patched
    lifespan, an isolated token DB and the fake authority

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the API client because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. Unit fixtures run on one thread and use plain :memory:.

Environment must be set before any project import so get_settings() caches
the test values (rate limiting off, known JWT secret, known base URL).
"""

from __future__ import annotations

import os
import time
from collections.abc import Generator
from contextlib import asynccontextmanager

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("PUBLIC_BASE_URL", "https://qr.example.com")
os.environ.setdefault("AUTHORITY_JWT_SECRET", "test-jwt-secret-0123456789abcdef0123456789")

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from core.config import Settings, get_settings
from core.models import Identity
from identity.result import Err, ErrorReason, Ok
from qrauth.issuer import TokenIssuer
from qrauth.redeemer import TokenRedeemer
from qrauth.store import TokenStore

AUTHORITY_URL = "https://auth.example.com"

ANA = Identity(id="11111111-1111-1111-1111-111111111111", email="ana@example.com", metadata={"full_name": "Ana"})
BEN = Identity(id="22222222-2222-2222-2222-222222222222", email="ben@example.com")


# ---------------------------------------------------------------------------
# Fake identity authority
# ---------------------------------------------------------------------------


class FakeAuthority:
    """Dictionary-backed identity authority.

    Knobs:
      link          -- what generate_login_link returns (default: a GoTrue
                       style verify link with no embedded session)
      link_error    -- Err to return from generate_login_link instead
      lookup_error  -- Err to return from every identity lookup instead
      location      -- what resolve_login_link returns
    """

    def __init__(self, *identities: Identity) -> None:
        self.identities = {i.id: i for i in identities}
        self.link: str | None = None
        self.link_error: Err | None = None
        self.lookup_error: Err | None = None
        self.location: str | None = None
        self.link_requests: list[tuple[str, str]] = []
        self.resolved: list[str] = []
        self.closed = False

    def find_identity_by_email(self, email: str):
        if self.lookup_error is not None:
            return self.lookup_error
        for identity in self.identities.values():
            if identity.email.lower() == email.strip().lower():
                return Ok(identity)
        return Ok(None)

    def get_identity(self, user_id: str):
        if self.lookup_error is not None:
            return self.lookup_error
        identity = self.identities.get(user_id)
        if identity is None:
            return Err(ErrorReason.NOT_FOUND, "User not found", 404)
        return Ok(identity)

    def generate_login_link(self, email: str, redirect_to: str):
        self.link_requests.append((email, redirect_to))
        if self.link_error is not None:
            return self.link_error
        return Ok(self.link or f"{AUTHORITY_URL}/auth/v1/verify?token=otp123&type=magiclink&redirect_to={redirect_to}")

    def resolve_login_link(self, url: str):
        self.resolved.append(url)
        return Ok(self.location)

    def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        public_base_url="https://qr.example.com/",
        authority_url=AUTHORITY_URL,
        authority_service_key="service-key",
    )


@pytest.fixture
def store() -> Generator[TokenStore, None, None]:
    s = TokenStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def authority() -> FakeAuthority:
    return FakeAuthority(ANA, BEN)


@pytest.fixture
def issuer(store, authority, settings) -> TokenIssuer:
    return TokenIssuer(store, authority, settings)


@pytest.fixture
def redeemer(store, authority, settings) -> TokenRedeemer:
    return TokenRedeemer(store, authority, settings)


# ---------------------------------------------------------------------------
# Caller JWTs
# ---------------------------------------------------------------------------


def make_caller_token(email: str, role: str = "authenticated", sub: str = ANA.id, expires_in: int = 3600) -> str:
    """Encode a JWT the way the identity authority would for a signed-in user."""
    payload = {
        "sub": sub,
        "email": email,
        "role": role,
        "aud": "authenticated",
        "exp": int(time.time()) + expires_in,
    }
    return jwt.encode(payload, get_settings().authority_jwt_secret, algorithm="HS256")


def auth_headers(email: str = ANA.email, role: str = "authenticated") -> dict[str, str]:
    return {"Authorization": f"Bearer {make_caller_token(email, role)}"}


# ---------------------------------------------------------------------------
# API client -- one TestClient per test module
# ---------------------------------------------------------------------------


def _patch_lifespan(token_store: TokenStore, authority: FakeAuthority):
    """Return a lifespan that wires the test store and fake authority into app.state."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.token_store = token_store
        app.state.authority = authority
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, FakeAuthority, TokenStore], None, None]:
    """Yield (client, fake_authority, store) for API integration tests.

    follow_redirects=False so redirect tests can assert on Location headers.
    Each test module gets its own named in-memory database.
    """
    from asgi import app

    db_url = f"sqlite:///file:test_qr_{request.module.__name__}?mode=memory&cache=shared&uri=true"
    token_store = TokenStore(db_url)
    fake = FakeAuthority(ANA, BEN)

    app.router.lifespan_context = _patch_lifespan(token_store, fake)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield client, fake, token_store

    token_store.close()
