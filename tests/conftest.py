"""Shared test fixtures for the OIDC consent broker."""

import json
import time
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from cryptography.fernet import Fernet
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient
from jwt.algorithms import RSAAlgorithm
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from broker.core.app import create_app
from broker.core.deps import get_upstream_client
from broker.core.settings import BrokerSettings, UpstreamSettings
from broker.crypto.sealing import Sealer
from broker.db.base import BaseEntity
from broker.db.engine import get_session
from broker.upstream.client import UpstreamOIDCClient

ISSUER = "https://idp.example.com/"
UPSTREAM_CLIENT_ID = "broker-upstream-client"
UPSTREAM_CLIENT_SECRET = "upstream-secret"
PUBLIC_URL = "http://test"
SEALING_KEY = Fernet.generate_key().decode()


class FakeIdentityProvider:
    """In-process OIDC provider served through ``httpx.MockTransport``.

    Tests steer it through plain attributes: the nonce to embed, the
    subject, whether the next token call fails, and so on. Every request is
    recorded in ``requests``.
    """

    def __init__(self) -> None:
        self._key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.kid = "test-key-1"
        self.issuer = ISSUER
        self.subject = "auth0|user-123"
        self.name: str | None = "Ada Lovelace"
        self.email: str | None = "ada@example.com"
        self.nonce: str | None = None
        self.expected_code = "upstream-code-1"
        self.expires_in = 900
        self.refresh_counter = 0
        self.rotate_refresh = True
        self.token_status = 200
        self.discovery_status = 200
        self.revocation_enabled = True
        self.requests: list[httpx.Request] = []

    @property
    def jwks(self) -> dict[str, Any]:
        jwk = json.loads(RSAAlgorithm.to_jwk(self._key.public_key()))
        jwk.update({"kid": self.kid, "use": "sig", "alg": "RS256"})
        return {"keys": [jwk]}

    @property
    def discovery_document(self) -> dict[str, Any]:
        document = {
            "issuer": self.issuer,
            "authorization_endpoint": f"{ISSUER}authorize",
            "token_endpoint": f"{ISSUER}oauth/token",
            "jwks_uri": f"{ISSUER}.well-known/jwks.json",
            "userinfo_endpoint": f"{ISSUER}userinfo",
            "code_challenge_methods_supported": ["S256", "plain"],
        }
        if self.revocation_enabled:
            document["revocation_endpoint"] = f"{ISSUER}oauth/revoke"
        return document

    def sign_id_token(self, **overrides: Any) -> str:
        """Sign an ID token with sensible defaults; ``None`` drops a claim."""
        now = int(time.time())
        claims: dict[str, Any] = {
            "iss": self.issuer,
            "sub": self.subject,
            "aud": UPSTREAM_CLIENT_ID,
            "iat": now,
            "exp": now + 600,
            "name": self.name,
            "email": self.email,
            "nonce": self.nonce,
        }
        claims.update(overrides)
        claims = {k: v for k, v in claims.items() if v is not None}
        return jwt.encode(
            claims, self._key, algorithm="RS256", headers={"kid": self.kid}
        )

    def _token_response(self, form: dict[str, str]) -> httpx.Response:
        if self.token_status != 200:
            return httpx.Response(self.token_status, json={"error": "invalid_grant"})
        grant_type = form.get("grant_type")
        if grant_type == "authorization_code":
            if form.get("code") != self.expected_code:
                return httpx.Response(400, json={"error": "invalid_grant"})
            refresh = "upstream-refresh-0"
        elif grant_type == "refresh_token":
            self.refresh_counter += 1
            refresh = (
                f"upstream-refresh-{self.refresh_counter}"
                if self.rotate_refresh
                else None
            )
        else:
            return httpx.Response(400, json={"error": "unsupported_grant_type"})
        body: dict[str, Any] = {
            "access_token": f"upstream-access-{self.refresh_counter}",
            "token_type": "Bearer",
            "expires_in": self.expires_in,
            "id_token": self.sign_id_token(
                nonce=self.nonce if grant_type == "authorization_code" else None
            ),
            "scope": "openid email profile offline_access",
        }
        if refresh:
            body["refresh_token"] = refresh
        return httpx.Response(200, json=body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/.well-known/openid-configuration":
            if self.discovery_status != 200:
                return httpx.Response(self.discovery_status)
            return httpx.Response(200, json=self.discovery_document)
        if path == "/.well-known/jwks.json":
            return httpx.Response(200, json=self.jwks)
        if path == "/oauth/token" and request.method == "POST":
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            return self._token_response(form)
        if path == "/oauth/revoke" and request.method == "POST":
            return httpx.Response(200)
        return httpx.Response(404)

    def calls(self, path: str) -> list[httpx.Request]:
        """Recorded requests for one endpoint path."""
        return [r for r in self.requests if r.url.path == path]


@pytest.fixture(autouse=True)
def _set_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set environment variables for test settings."""
    monkeypatch.setenv("BROKER_PUBLIC_URL", PUBLIC_URL)
    monkeypatch.setenv("BROKER_ENVIRONMENT", "development")
    monkeypatch.setenv("BROKER_SEALING_KEY", SEALING_KEY)
    monkeypatch.setenv("UPSTREAM_ISSUER_URL", ISSUER)
    monkeypatch.setenv("UPSTREAM_CLIENT_ID", UPSTREAM_CLIENT_ID)
    monkeypatch.setenv("UPSTREAM_CLIENT_SECRET", UPSTREAM_CLIENT_SECRET)


@pytest.fixture
def broker_settings() -> BrokerSettings:
    return BrokerSettings()


@pytest.fixture
def upstream_settings() -> UpstreamSettings:
    return UpstreamSettings()


@pytest.fixture
def sealer() -> Sealer:
    return Sealer(SEALING_KEY)


@pytest.fixture
def idp() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def upstream(
    idp: FakeIdentityProvider, upstream_settings: UpstreamSettings
) -> UpstreamOIDCClient:
    """Upstream client wired to the fake provider."""
    transport = httpx.MockTransport(idp.handler)
    return UpstreamOIDCClient(upstream_settings, transport=transport)


@pytest.fixture
async def db_engine() -> AsyncIterator[AsyncEngine]:
    """In-memory SQLite engine with the broker schema."""
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, _rec) -> None:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(BaseEntity.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Create an in-memory SQLite async session for tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(
    db_session: AsyncSession, upstream: UpstreamOIDCClient
) -> AsyncIterator[AsyncClient]:
    """Create an httpx test client with DB session and upstream overrides."""
    app = create_app()

    async def _override_session() -> AsyncIterator[AsyncSession]:
        try:
            yield db_session
            await db_session.commit()
        except Exception:
            await db_session.rollback()
            raise

    app.dependency_overrides[get_session] = _override_session
    app.dependency_overrides[get_upstream_client] = lambda: upstream

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url=PUBLIC_URL) as ac:
        yield ac
