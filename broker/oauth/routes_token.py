"""Downstream token endpoint."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Form
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import JSONResponse

from broker.core.deps import get_broker_settings, get_sealer, get_upstream_client
from broker.core.errors import RefreshError, UpstreamError
from broker.core.settings import BrokerSettings
from broker.crypto.sealing import Sealer, SealingError
from broker.db.engine import get_session
from broker.flow.token_exchange import token_exchange_callback
from broker.flow.types import GrantType, TokenExchangeResult
from broker.oauth.auth_code import redeem_authorization_code
from broker.oauth.token_service import claim_refresh_token, issue_tokens, open_props
from broker.oauth.types import TokenIssuanceParams, TokenResponse
from broker.upstream.client import UpstreamOIDCClient

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("broker.audit")

router = APIRouter()

HTTP_BAD_REQUEST = 400
HTTP_BAD_GATEWAY = 502


class _TokenForm(BaseModel):
    """Bundle form fields for the token endpoint."""

    grant_type: str
    code: str | None = None
    redirect_uri: str | None = None
    client_id: str | None = None
    code_verifier: str | None = None
    refresh_token: str | None = None


def _oauth_error(
    error: str, description: str | None = None, status_code: int = HTTP_BAD_REQUEST
) -> JSONResponse:
    body = {"error": error}
    if description:
        body["error_description"] = description
    return JSONResponse(body, status_code=status_code)


def _access_ttl(result: TokenExchangeResult, settings: BrokerSettings) -> int:
    """Upstream lifetime when reported, including zero; else the configured default."""
    if result.access_token_ttl is None:
        return settings.access_token_ttl
    return result.access_token_ttl


@router.post("/token", response_model=None)
async def token_endpoint(
    db: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[BrokerSettings, Depends(get_broker_settings)],
    sealer: Annotated[Sealer, Depends(get_sealer)],
    upstream: Annotated[UpstreamOIDCClient, Depends(get_upstream_client)],
    form: Annotated[_TokenForm, Form()],
) -> TokenResponse | JSONResponse:
    """POST /token -- exchange an auth code or a refresh token."""
    if form.grant_type == GrantType.AUTHORIZATION_CODE:
        return await _handle_auth_code(db, settings, sealer, upstream, form)
    if form.grant_type == GrantType.REFRESH_TOKEN:
        return await _handle_refresh(db, settings, sealer, upstream, form)
    return _oauth_error("unsupported_grant_type")


async def _handle_auth_code(
    db: AsyncSession,
    settings: BrokerSettings,
    sealer: Sealer,
    upstream: UpstreamOIDCClient,
    form: _TokenForm,
) -> TokenResponse | JSONResponse:
    """Handle grant_type=authorization_code."""
    if not form.code or not form.redirect_uri or not form.client_id:
        return _oauth_error("invalid_request")
    if not form.code_verifier:
        return _oauth_error("invalid_request", "code_verifier is required")

    redeemed = await redeem_authorization_code(
        db,
        sealer,
        code=form.code,
        client_id=form.client_id,
        redirect_uri=form.redirect_uri,
        code_verifier=form.code_verifier,
    )
    if redeemed is None:
        return _oauth_error("invalid_grant")

    result = await token_exchange_callback(
        GrantType.AUTHORIZATION_CODE, redeemed.props, upstream
    )
    params = TokenIssuanceParams(
        client_id=redeemed.client_id,
        user_id=redeemed.user_id,
        label=redeemed.label,
        scope=redeemed.scope,
        access_ttl=_access_ttl(result, settings),
        refresh_ttl=settings.refresh_token_ttl,
    )
    return await issue_tokens(db, sealer, params, result.props)


async def _handle_refresh(
    db: AsyncSession,
    settings: BrokerSettings,
    sealer: Sealer,
    upstream: UpstreamOIDCClient,
    form: _TokenForm,
) -> TokenResponse | JSONResponse:
    """Handle grant_type=refresh_token.

    The presented token is revoked before the upstream call; any failure
    after that point sends the client back through the full flow.
    """
    if not form.refresh_token or not form.client_id:
        return _oauth_error("invalid_request")

    entity = await claim_refresh_token(
        db, refresh_token=form.refresh_token, client_id=form.client_id
    )
    if entity is None:
        return _oauth_error("invalid_grant")

    try:
        props = open_props(sealer, entity)
        result = await token_exchange_callback(GrantType.REFRESH_TOKEN, props, upstream)
    except (SealingError, RefreshError) as exc:
        audit_logger.warning(
            "Refresh failed for %s on client %s: %s",
            entity.user_id,
            entity.client_id,
            type(exc).__name__,
        )
        return _oauth_error("invalid_grant", "re-authentication required")
    except UpstreamError as exc:
        logger.warning("Upstream unavailable during refresh: %s", exc.detail)
        return _oauth_error("server_error", exc.message, HTTP_BAD_GATEWAY)

    params = TokenIssuanceParams(
        client_id=entity.client_id,
        user_id=result.props.claims.sub,
        label=result.props.claims.label,
        scope=entity.scope,
        access_ttl=_access_ttl(result, settings),
        refresh_ttl=settings.refresh_token_ttl,
    )
    return await issue_tokens(db, sealer, params, result.props)
