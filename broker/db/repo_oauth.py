"""Repository for downstream client operations."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from broker.db.models_oauth import OAuthClientEntity
from broker.flow.types import ClientInfo


async def get_client(session: AsyncSession, client_id: str) -> OAuthClientEntity | None:
    """Look up an active downstream client by ID."""
    stmt = select(OAuthClientEntity).where(
        OAuthClientEntity.id == client_id,
        OAuthClientEntity.is_active.is_(True),
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


def to_client_info(client: OAuthClientEntity) -> ClientInfo:
    """Display metadata for the consent page."""
    return ClientInfo(
        client_id=client.id,
        client_name=client.client_name,
        logo_uri=client.logo_uri,
        client_uri=client.client_uri,
        redirect_uris=list(client.redirect_uris or []),
    )
