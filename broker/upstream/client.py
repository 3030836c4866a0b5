"""HTTP client for the upstream OIDC identity provider."""

import logging
import secrets
from collections.abc import Mapping

import httpx
from pydantic import BaseModel, ValidationError

from broker.core.errors import (
    DiscoveryError,
    InvalidIdToken,
    NoRefreshToken,
    RefreshError,
    TokenExchangeError,
    UpstreamAuthorizationError,
    UpstreamError,
)
from broker.core.settings import UpstreamSettings
from broker.core.urls import add_query_params
from broker.flow.types import PendingAuthorization
from broker.upstream.discovery import discovery_url, parse_discovery
from broker.upstream.id_token import verify_id_token
from broker.upstream.types import (
    AuthorizationServerMetadata,
    IdentityClaims,
    UpstreamTokenSet,
)

logger = logging.getLogger(__name__)

HTTP_OK = 200
CLIENT_SECRET_BASIC = "client_secret_basic"


class _TokenEndpointResponse(BaseModel):
    """Successful token endpoint body (RFC 6749 section 5.1)."""

    access_token: str
    token_type: str
    expires_in: int | None = None
    refresh_token: str | None = None
    id_token: str | None = None
    scope: str | None = None


class UpstreamOIDCClient:
    """Talks to one identity provider: discovery, code exchange, refresh.

    Every call opens its own ``httpx.AsyncClient`` with a bounded timeout.
    Nothing is retried: codes and nonces are single use, so a failure ends
    the flow instance.
    """

    def __init__(
        self,
        settings: UpstreamSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._settings.http_timeout,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )

    async def discover(self) -> AuthorizationServerMetadata:
        """Fetch and validate the provider's openid-configuration."""
        url = discovery_url(self._settings.issuer_url)
        try:
            async with self._http() as http:
                resp = await http.get(url)
        except httpx.HTTPError as exc:
            raise DiscoveryError(f"discovery request failed: {exc!r}") from exc
        if resp.status_code != HTTP_OK:
            raise DiscoveryError(f"discovery returned HTTP {resp.status_code}")
        try:
            document = resp.json()
        except ValueError as exc:
            raise DiscoveryError("discovery response is not JSON") from exc
        return parse_discovery(self._settings.issuer_url, document)

    def build_authorization_url(
        self,
        metadata: AuthorizationServerMetadata,
        pending: PendingAuthorization,
        redirect_uri: str,
    ) -> str:
        """Upstream authorization URL; state doubles as the transaction id."""
        params: dict[str, str | None] = {
            "client_id": self._settings.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "audience": self._settings.audience or None,
            "scope": self._settings.scope,
            "code_challenge": pending.code_challenge,
            "code_challenge_method": "S256",
            "nonce": pending.nonce,
            "state": pending.transaction_id,
        }
        return add_query_params(metadata.authorization_endpoint, params)

    def validate_authorization_response(
        self,
        metadata: AuthorizationServerMetadata,
        params: Mapping[str, str],
        expected_state: str,
    ) -> str:
        """Check the callback parameters and return the authorization code."""
        state = params.get("state") or ""
        if not secrets.compare_digest(state, expected_state):
            raise UpstreamAuthorizationError("state does not match the transaction")
        iss = params.get("iss")
        if iss is not None and iss != metadata.issuer:
            raise UpstreamAuthorizationError(f"unexpected iss parameter {iss!r}")
        if "error" in params:
            raise UpstreamAuthorizationError(
                f"provider returned error={params['error']!r} "
                f"description={params.get('error_description')!r}"
            )
        code = params.get("code")
        if not code:
            raise UpstreamAuthorizationError("authorization response has no code")
        return code

    async def exchange_code(
        self,
        metadata: AuthorizationServerMetadata,
        code: str,
        verifier: str,
        redirect_uri: str,
    ) -> UpstreamTokenSet:
        """Authorization code grant with client authentication and PKCE."""
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": verifier,
        }
        token_set = await self._token_request(metadata, form, TokenExchangeError)
        if not token_set.id_token:
            raise TokenExchangeError("token response has no id_token")
        return token_set

    async def validate_id_token(
        self,
        metadata: AuthorizationServerMetadata,
        id_token: str | None,
        expected_nonce: str | None,
    ) -> IdentityClaims:
        """Verify an id_token with the provider's current JWKS."""
        if not id_token:
            raise InvalidIdToken("id_token missing")
        jwks = await self._fetch_jwks(metadata)
        return verify_id_token(
            id_token,
            jwks,
            issuer=metadata.issuer,
            client_id=self._settings.client_id,
            algorithms=self._settings.id_token_algorithms,
            expected_nonce=expected_nonce,
        )

    async def refresh(
        self, metadata: AuthorizationServerMetadata, refresh_token: str | None
    ) -> UpstreamTokenSet:
        """Refresh token grant."""
        if not refresh_token:
            raise NoRefreshToken()
        form = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        return await self._token_request(metadata, form, RefreshError)

    async def revoke(
        self,
        metadata: AuthorizationServerMetadata,
        token: str,
        token_type_hint: str = "refresh_token",
    ) -> bool:
        """Best-effort RFC 7009 revocation; False when unsupported or failed."""
        if not metadata.revocation_endpoint:
            return False
        form = {"token": token, "token_type_hint": token_type_hint}
        data, auth = self._authenticate(form)
        try:
            async with self._http() as http:
                resp = await http.post(
                    metadata.revocation_endpoint, data=data, auth=auth
                )
        except httpx.HTTPError as exc:
            logger.warning("Upstream revocation failed: %r", exc)
            return False
        return resp.status_code == HTTP_OK

    def _authenticate(
        self, form: dict[str, str]
    ) -> tuple[dict[str, str], httpx.BasicAuth | None]:
        """Apply the configured client authentication to a form body."""
        data = {**form, "client_id": self._settings.client_id}
        if self._settings.token_auth_method == CLIENT_SECRET_BASIC:
            return data, httpx.BasicAuth(
                self._settings.client_id, self._settings.client_secret
            )
        data["client_secret"] = self._settings.client_secret
        return data, None

    async def _token_request(
        self,
        metadata: AuthorizationServerMetadata,
        form: dict[str, str],
        error_cls: type[UpstreamError] | type[RefreshError],
    ) -> UpstreamTokenSet:
        data, auth = self._authenticate(form)
        try:
            async with self._http() as http:
                resp = await http.post(metadata.token_endpoint, data=data, auth=auth)
        except httpx.HTTPError as exc:
            raise error_cls(f"token request failed: {exc!r}") from exc

        try:
            body = resp.json()
        except ValueError as exc:
            raise error_cls(
                f"token endpoint returned non-JSON (HTTP {resp.status_code})"
            ) from exc
        if resp.status_code != HTTP_OK:
            error = body.get("error") if isinstance(body, dict) else None
            raise error_cls(
                f"token endpoint returned HTTP {resp.status_code} error={error!r}"
            )

        try:
            parsed = _TokenEndpointResponse.model_validate(body)
        except ValidationError as exc:
            raise error_cls(f"malformed token response: {exc}") from exc
        if parsed.token_type.lower() != "bearer":
            raise error_cls(f"unsupported token_type {parsed.token_type!r}")

        return UpstreamTokenSet(
            access_token=parsed.access_token,
            id_token=parsed.id_token,
            refresh_token=parsed.refresh_token,
            access_token_ttl=parsed.expires_in,
            token_type=parsed.token_type,
            scope=parsed.scope,
        )

    async def _fetch_jwks(self, metadata: AuthorizationServerMetadata) -> dict:
        try:
            async with self._http() as http:
                resp = await http.get(metadata.jwks_uri)
            resp.raise_for_status()
            jwks = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise InvalidIdToken(f"could not load JWKS: {exc!r}") from exc
        if not isinstance(jwks, dict):
            raise InvalidIdToken("JWKS is not a JSON object")
        return jwks
