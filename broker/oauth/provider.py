"""Default downstream authorization layer backed by the broker database."""

from collections.abc import Mapping
from typing import Annotated

from fastapi import Depends
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from broker.core.deps import get_broker_settings, get_sealer
from broker.core.errors import InvalidRequest
from broker.core.settings import BrokerSettings
from broker.core.urls import add_query_params
from broker.crypto.sealing import Sealer
from broker.db.engine import get_session
from broker.db.repo_oauth import get_client, to_client_info
from broker.flow.types import ClientInfo, DownstreamAuthRequest, IssuedGrant
from broker.oauth.auth_code import AuthCodeParams, create_authorization_code


def _validate_request(params: Mapping[str, str]) -> str | None:
    """Return an error description if the request is invalid, else None."""
    if not params.get("client_id"):
        return "client_id is required"
    if not params.get("redirect_uri"):
        return "redirect_uri is required"
    if params.get("response_type") != "code":
        return "unsupported response_type"
    if not params.get("code_challenge"):
        return "PKCE required"
    method = params.get("code_challenge_method")
    if method and method != "S256":
        return "Only S256"
    return None


class DownstreamAuthorizer:
    """Client registry and code minting for downstream MCP clients."""

    def __init__(
        self, session: AsyncSession, settings: BrokerSettings, sealer: Sealer
    ) -> None:
        self._session = session
        self._settings = settings
        self._sealer = sealer

    def parse_auth_request(self, params: Mapping[str, str]) -> DownstreamAuthRequest:
        """Parse the downstream authorization request query."""
        error = _validate_request(params)
        if error is not None:
            raise InvalidRequest(error)
        try:
            return DownstreamAuthRequest(
                response_type="code",
                client_id=params["client_id"],
                redirect_uri=params["redirect_uri"],
                scope=params.get("scope", ""),
                state=params.get("state"),
                code_challenge=params["code_challenge"],
                code_challenge_method="S256",
            )
        except ValidationError as exc:
            raise InvalidRequest(str(exc)) from exc

    async def lookup_client(self, client_id: str) -> ClientInfo | None:
        """Return display metadata for an active client."""
        client = await get_client(self._session, client_id)
        if client is None:
            return None
        return to_client_info(client)

    async def complete_authorization(
        self, request: DownstreamAuthRequest, grant: IssuedGrant
    ) -> str:
        """Mint a downstream code and build the client redirect."""
        params = AuthCodeParams(
            client_id=request.client_id,
            user_id=grant.user_id,
            label=grant.label,
            redirect_uri=request.redirect_uri,
            scope=grant.scope,
            code_challenge=request.code_challenge,
            props=grant.props,
            ttl_seconds=self._settings.auth_code_ttl,
        )
        code = await create_authorization_code(self._session, self._sealer, params)
        return add_query_params(
            request.redirect_uri, {"code": code, "state": request.state}
        )


def get_authorization_layer(
    db: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[BrokerSettings, Depends(get_broker_settings)],
    sealer: Annotated[Sealer, Depends(get_sealer)],
) -> DownstreamAuthorizer:
    """FastAPI dependency building the default layer for one request."""
    return DownstreamAuthorizer(db, settings, sealer)
