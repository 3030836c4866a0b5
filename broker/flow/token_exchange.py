"""Token exchange callback invoked by the downstream token endpoint."""

import logging

from broker.core.errors import InvalidIdToken, NoUpstreamRefreshToken, RefreshError
from broker.flow.types import GrantProps, GrantType, TokenExchangeResult
from broker.upstream.client import UpstreamOIDCClient

logger = logging.getLogger(__name__)


async def token_exchange_callback(
    grant_type: GrantType,
    props: GrantProps,
    upstream: UpstreamOIDCClient,
) -> TokenExchangeResult:
    """Align or renew the upstream tokens behind a downstream token.

    On ``authorization_code`` the downstream access token gets the upstream
    lifetime so it never outlives the token it wraps. On ``refresh_token``
    the upstream refresh grant runs and claims plus token set are replaced
    together; a provider that does not rotate keeps the old refresh token.
    """
    if grant_type == GrantType.AUTHORIZATION_CODE:
        return TokenExchangeResult(
            props=props,
            access_token_ttl=props.token_set.access_token_ttl,
        )

    upstream_refresh = props.token_set.refresh_token
    if not upstream_refresh:
        raise NoUpstreamRefreshToken()

    metadata = await upstream.discover()
    token_set = await upstream.refresh(metadata, upstream_refresh)
    try:
        claims = await upstream.validate_id_token(
            metadata, token_set.id_token, expected_nonce=None
        )
    except InvalidIdToken as exc:
        raise RefreshError(f"refreshed id_token rejected: {exc.detail}") from exc
    if claims.sub != props.claims.sub:
        raise RefreshError("refreshed id_token belongs to a different subject")

    token_set = token_set.model_copy(
        update={"refresh_token": token_set.refresh_token or upstream_refresh}
    )
    logger.debug("Refreshed upstream tokens for %s", claims.sub)
    return TokenExchangeResult(
        props=GrantProps(claims=claims, token_set=token_set),
        access_token_ttl=token_set.access_token_ttl,
    )
