"""Authorization server metadata endpoint."""

from typing import Annotated

from fastapi import APIRouter, Depends

from broker.core.deps import get_broker_settings, get_upstream_settings
from broker.core.settings import BrokerSettings, UpstreamSettings
from broker.oauth.discovery import build_metadata
from broker.oauth.types import AuthorizationServerMetadata

router = APIRouter()


@router.get("/.well-known/oauth-authorization-server")
async def authorization_server_metadata(
    settings: Annotated[BrokerSettings, Depends(get_broker_settings)],
    upstream_settings: Annotated[UpstreamSettings, Depends(get_upstream_settings)],
) -> AuthorizationServerMetadata:
    """RFC 8414 metadata."""
    return build_metadata(settings, upstream_settings)
