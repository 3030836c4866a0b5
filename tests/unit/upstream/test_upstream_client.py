"""Tests for the upstream OIDC client against a fake provider."""

from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from broker.core.errors import (
    DiscoveryError,
    InvalidIdToken,
    NoRefreshToken,
    RefreshError,
    TokenExchangeError,
    UpstreamAuthorizationError,
)
from broker.core.settings import UpstreamSettings
from broker.flow.types import DownstreamAuthRequest, PendingAuthorization
from broker.upstream.client import UpstreamOIDCClient
from broker.upstream.types import AuthorizationServerMetadata

CALLBACK = "http://test/callback"


def _pending() -> PendingAuthorization:
    now = datetime.now(UTC)
    return PendingAuthorization(
        transaction_id="txn-state-1",
        consent_token="consent-1",
        session_binding="binding-1",
        code_verifier="v" * 43,
        code_challenge="challenge-1",
        nonce="nonce-1",
        request=DownstreamAuthRequest(
            client_id="mcp-client",
            redirect_uri="http://localhost:3000/cb",
            code_challenge="downstream-challenge",
        ),
        created_at=now,
        expires_at=now + timedelta(hours=1),
    )


@pytest.fixture
async def metadata(upstream: UpstreamOIDCClient) -> AuthorizationServerMetadata:
    return await upstream.discover()


class TestDiscover:
    """Tests for discover."""

    async def test_fetches_metadata(
        self, upstream: UpstreamOIDCClient, idp: Any
    ) -> None:
        metadata = await upstream.discover()
        assert metadata.issuer == idp.issuer
        assert metadata.revocation_endpoint is not None

    async def test_http_error(self, upstream: UpstreamOIDCClient, idp: Any) -> None:
        idp.discovery_status = 500
        with pytest.raises(DiscoveryError):
            await upstream.discover()

    async def test_issuer_mismatch(
        self, upstream: UpstreamOIDCClient, idp: Any
    ) -> None:
        idp.issuer = "https://evil.example.com/"
        with pytest.raises(DiscoveryError):
            await upstream.discover()

    async def test_network_failure(self, upstream_settings: UpstreamSettings) -> None:
        def _refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = UpstreamOIDCClient(
            upstream_settings, transport=httpx.MockTransport(_refuse)
        )
        with pytest.raises(DiscoveryError):
            await client.discover()

    async def test_non_json(self, upstream_settings: UpstreamSettings) -> None:
        client = UpstreamOIDCClient(
            upstream_settings,
            transport=httpx.MockTransport(lambda r: httpx.Response(200, text="<html>")),
        )
        with pytest.raises(DiscoveryError):
            await client.discover()


class TestAuthorizationUrl:
    """Tests for build_authorization_url."""

    def test_parameters(
        self, upstream: UpstreamOIDCClient, metadata: AuthorizationServerMetadata
    ) -> None:
        url = upstream.build_authorization_url(metadata, _pending(), CALLBACK)
        parsed = urlparse(url)
        query = {k: v[0] for k, v in parse_qs(parsed.query).items()}
        assert url.startswith(metadata.authorization_endpoint)
        assert query["response_type"] == "code"
        assert query["client_id"] == "broker-upstream-client"
        assert query["redirect_uri"] == CALLBACK
        assert query["code_challenge"] == "challenge-1"
        assert query["code_challenge_method"] == "S256"
        assert query["nonce"] == "nonce-1"
        assert query["state"] == "txn-state-1"
        assert "offline_access" in query["scope"].split()
        assert "audience" not in query

    def test_audience_when_configured(
        self,
        monkeypatch: pytest.MonkeyPatch,
        idp: Any,
        metadata: AuthorizationServerMetadata,
    ) -> None:
        monkeypatch.setenv("UPSTREAM_AUDIENCE", "https://api.example.com")
        client = UpstreamOIDCClient(
            UpstreamSettings(), transport=httpx.MockTransport(idp.handler)
        )
        url = client.build_authorization_url(metadata, _pending(), CALLBACK)
        assert parse_qs(urlparse(url).query)["audience"] == ["https://api.example.com"]


class TestValidateAuthorizationResponse:
    """Tests for validate_authorization_response."""

    def test_returns_code(
        self, upstream: UpstreamOIDCClient, metadata: AuthorizationServerMetadata
    ) -> None:
        params = {"code": "c-1", "state": "s-1"}
        code = upstream.validate_authorization_response(metadata, params, "s-1")
        assert code == "c-1"

    def test_state_mismatch(
        self, upstream: UpstreamOIDCClient, metadata: AuthorizationServerMetadata
    ) -> None:
        with pytest.raises(UpstreamAuthorizationError):
            upstream.validate_authorization_response(
                metadata, {"code": "c-1", "state": "other"}, "s-1"
            )

    def test_provider_error(
        self, upstream: UpstreamOIDCClient, metadata: AuthorizationServerMetadata
    ) -> None:
        with pytest.raises(UpstreamAuthorizationError):
            upstream.validate_authorization_response(
                metadata, {"error": "access_denied", "state": "s-1"}, "s-1"
            )

    def test_missing_code(
        self, upstream: UpstreamOIDCClient, metadata: AuthorizationServerMetadata
    ) -> None:
        with pytest.raises(UpstreamAuthorizationError):
            upstream.validate_authorization_response(metadata, {"state": "s-1"}, "s-1")

    def test_iss_mismatch(
        self, upstream: UpstreamOIDCClient, metadata: AuthorizationServerMetadata
    ) -> None:
        params = {"code": "c-1", "state": "s-1", "iss": "https://evil.test/"}
        with pytest.raises(UpstreamAuthorizationError):
            upstream.validate_authorization_response(metadata, params, "s-1")

    def test_iss_match(
        self, upstream: UpstreamOIDCClient, metadata: AuthorizationServerMetadata
    ) -> None:
        params = {"code": "c-1", "state": "s-1", "iss": metadata.issuer}
        code = upstream.validate_authorization_response(metadata, params, "s-1")
        assert code == "c-1"


class TestExchangeCode:
    """Tests for exchange_code."""

    async def test_success(
        self,
        upstream: UpstreamOIDCClient,
        metadata: AuthorizationServerMetadata,
        idp: Any,
    ) -> None:
        token_set = await upstream.exchange_code(
            metadata, idp.expected_code, "v" * 43, CALLBACK
        )
        assert token_set.refresh_token == "upstream-refresh-0"
        assert token_set.access_token_ttl == 900
        assert token_set.id_token

    async def test_sends_verifier_and_secret(
        self,
        upstream: UpstreamOIDCClient,
        metadata: AuthorizationServerMetadata,
        idp: Any,
    ) -> None:
        await upstream.exchange_code(metadata, idp.expected_code, "v" * 43, CALLBACK)
        (request,) = idp.calls("/oauth/token")
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        assert form["code_verifier"] == "v" * 43
        assert form["redirect_uri"] == CALLBACK
        assert form["client_secret"] == "upstream-secret"
        assert "authorization" not in request.headers

    async def test_client_secret_basic(
        self,
        monkeypatch: pytest.MonkeyPatch,
        metadata: AuthorizationServerMetadata,
        idp: Any,
    ) -> None:
        monkeypatch.setenv("UPSTREAM_TOKEN_AUTH_METHOD", "client_secret_basic")
        client = UpstreamOIDCClient(
            UpstreamSettings(), transport=httpx.MockTransport(idp.handler)
        )
        await client.exchange_code(metadata, idp.expected_code, "v" * 43, CALLBACK)
        request = idp.calls("/oauth/token")[-1]
        assert request.headers["authorization"].startswith("Basic ")
        assert b"client_secret" not in request.content

    async def test_rejected_code(
        self, upstream: UpstreamOIDCClient, metadata: AuthorizationServerMetadata
    ) -> None:
        with pytest.raises(TokenExchangeError):
            await upstream.exchange_code(metadata, "wrong", "v" * 43, CALLBACK)

    async def test_non_bearer_rejected(
        self, upstream_settings: UpstreamSettings, metadata: AuthorizationServerMetadata
    ) -> None:
        body = {"access_token": "a", "token_type": "mac", "id_token": "x"}
        client = UpstreamOIDCClient(
            upstream_settings,
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json=body)),
        )
        with pytest.raises(TokenExchangeError):
            await client.exchange_code(metadata, "c", "v" * 43, CALLBACK)

    async def test_missing_id_token(
        self, upstream_settings: UpstreamSettings, metadata: AuthorizationServerMetadata
    ) -> None:
        body = {"access_token": "a", "token_type": "Bearer"}
        client = UpstreamOIDCClient(
            upstream_settings,
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json=body)),
        )
        with pytest.raises(TokenExchangeError, match="id_token"):
            await client.exchange_code(metadata, "c", "v" * 43, CALLBACK)


class TestValidateIdToken:
    """Tests for validate_id_token with the provider JWKS."""

    async def test_valid(
        self,
        upstream: UpstreamOIDCClient,
        metadata: AuthorizationServerMetadata,
        idp: Any,
    ) -> None:
        token = idp.sign_id_token(nonce="n-1")
        claims = await upstream.validate_id_token(metadata, token, "n-1")
        assert claims.sub == idp.subject

    async def test_missing_token(
        self, upstream: UpstreamOIDCClient, metadata: AuthorizationServerMetadata
    ) -> None:
        with pytest.raises(InvalidIdToken):
            await upstream.validate_id_token(metadata, None, "n-1")


class TestRefresh:
    """Tests for refresh."""

    async def test_success(
        self, upstream: UpstreamOIDCClient, metadata: AuthorizationServerMetadata
    ) -> None:
        token_set = await upstream.refresh(metadata, "upstream-refresh-0")
        assert token_set.refresh_token == "upstream-refresh-1"

    async def test_no_token(
        self, upstream: UpstreamOIDCClient, metadata: AuthorizationServerMetadata
    ) -> None:
        with pytest.raises(NoRefreshToken):
            await upstream.refresh(metadata, None)

    async def test_rejected(
        self,
        upstream: UpstreamOIDCClient,
        metadata: AuthorizationServerMetadata,
        idp: Any,
    ) -> None:
        idp.token_status = 400
        with pytest.raises(RefreshError):
            await upstream.refresh(metadata, "upstream-refresh-0")


class TestRevoke:
    """Tests for revoke."""

    async def test_posts_to_revocation_endpoint(
        self,
        upstream: UpstreamOIDCClient,
        metadata: AuthorizationServerMetadata,
        idp: Any,
    ) -> None:
        assert await upstream.revoke(metadata, "upstream-refresh-0") is True
        (request,) = idp.calls("/oauth/revoke")
        assert b"token=upstream-refresh-0" in request.content

    async def test_unsupported(self, upstream: UpstreamOIDCClient, idp: Any) -> None:
        idp.revocation_enabled = False
        metadata = await upstream.discover()
        assert await upstream.revoke(metadata, "upstream-refresh-0") is False
