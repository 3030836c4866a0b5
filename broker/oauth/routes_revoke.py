"""OAuth token revocation endpoint."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Form
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import JSONResponse

from broker.core.deps import get_sealer, get_upstream_client
from broker.core.errors import UpstreamError
from broker.crypto.sealing import Sealer, SealingError
from broker.db.engine import get_session
from broker.oauth.token_service import open_props, revoke_token
from broker.upstream.client import UpstreamOIDCClient

logger = logging.getLogger(__name__)

router = APIRouter()


async def _revoke_upstream(
    upstream: UpstreamOIDCClient, refresh_token: str | None
) -> None:
    """Revoke the upstream refresh token; failures are logged, not raised."""
    if not refresh_token:
        return
    try:
        metadata = await upstream.discover()
    except UpstreamError as exc:
        logger.warning("Skipping upstream revocation: %s", exc.detail)
        return
    if not await upstream.revoke(metadata, refresh_token):
        logger.info("Upstream did not confirm refresh token revocation")


@router.post("/revoke")
async def revoke(
    db: Annotated[AsyncSession, Depends(get_session)],
    sealer: Annotated[Sealer, Depends(get_sealer)],
    upstream: Annotated[UpstreamOIDCClient, Depends(get_upstream_client)],
    token: Annotated[str, Form()],
) -> JSONResponse:
    """POST /revoke -- revoke a token (idempotent per RFC 7009)."""
    entity = await revoke_token(db, token=token)
    if entity is not None:
        try:
            props = open_props(sealer, entity)
        except SealingError:
            logger.warning("Revoked token %s has unreadable props", entity.id)
        else:
            await _revoke_upstream(upstream, props.token_set.refresh_token)
    return JSONResponse({}, status_code=200)
