"""Downstream token issuance, refresh, revocation, and grant lookup."""

from datetime import UTC, datetime, timedelta

import uuid_utils
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from broker.crypto.pkce import hash_token, random_token
from broker.crypto.sealing import Sealer
from broker.db.models_oauth import OAuthTokenEntity
from broker.flow.types import GrantProps
from broker.oauth.types import TokenIssuanceParams, TokenResponse


class ResolvedGrant(BaseModel):
    """A live downstream grant as seen by the tool layer."""

    client_id: str
    user_id: str
    label: str
    scope: str
    props: GrantProps


def generate_access_token() -> str:
    """Generate an opaque access token."""
    return random_token(32)


def generate_refresh_token() -> str:
    """Generate a cryptographically random opaque refresh token."""
    return random_token(48)


def _expired(expiry: datetime | None) -> bool:
    if expiry is None:
        return False
    now = datetime.now(UTC)
    if expiry.tzinfo is None:
        now = now.replace(tzinfo=None)
    return now > expiry


async def issue_tokens(
    session: AsyncSession,
    sealer: Sealer,
    params: TokenIssuanceParams,
    props: GrantProps,
) -> TokenResponse:
    """Create and store an access + refresh token pair bound to the grant props."""
    access = generate_access_token()
    refresh = generate_refresh_token()
    now = datetime.now(UTC)

    entity = OAuthTokenEntity(
        id=str(uuid_utils.uuid7()),
        client_id=params.client_id,
        user_id=params.user_id,
        label=params.label,
        access_token_hash=hash_token(access),
        refresh_token_hash=hash_token(refresh),
        scope=params.scope,
        sealed_props=sealer.seal(props.model_dump_json()),
        token_type="Bearer",
        expires_at=now + timedelta(seconds=params.access_ttl),
        refresh_expires_at=now + timedelta(seconds=params.refresh_ttl),
        revoked=False,
    )
    session.add(entity)
    await session.flush()

    return TokenResponse(
        access_token=access,
        token_type="Bearer",
        expires_in=params.access_ttl,
        refresh_token=refresh,
        scope=params.scope,
    )


async def claim_refresh_token(
    session: AsyncSession, *, refresh_token: str, client_id: str
) -> OAuthTokenEntity | None:
    """Revoke a live refresh token and return its row; None if not claimable.

    The conditional update makes rotation single use even when two refresh
    requests race.
    """
    stmt = select(OAuthTokenEntity).where(
        OAuthTokenEntity.refresh_token_hash == hash_token(refresh_token),
        OAuthTokenEntity.client_id == client_id,
        OAuthTokenEntity.revoked.is_(False),
    )
    result = await session.execute(stmt)
    entity = result.scalar_one_or_none()
    if entity is None or _expired(entity.refresh_expires_at):
        return None

    claimed = await session.execute(
        update(OAuthTokenEntity)
        .where(OAuthTokenEntity.id == entity.id, OAuthTokenEntity.revoked.is_(False))
        .values(revoked=True)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        return None
    await session.flush()
    return entity


def open_props(sealer: Sealer, entity: OAuthTokenEntity) -> GrantProps:
    """Unseal the grant props stored with a token row."""
    return GrantProps.model_validate_json(sealer.unseal(entity.sealed_props))


async def revoke_token(session: AsyncSession, *, token: str) -> OAuthTokenEntity | None:
    """Revoke a token by its raw value (access or refresh).

    Returns the revoked row, or None when nothing live matched.
    """
    token_hash = hash_token(token)

    stmt = select(OAuthTokenEntity).where(
        OAuthTokenEntity.access_token_hash == token_hash,
        OAuthTokenEntity.revoked.is_(False),
    )
    result = await session.execute(stmt)
    entity = result.scalar_one_or_none()

    if entity is None:
        stmt = select(OAuthTokenEntity).where(
            OAuthTokenEntity.refresh_token_hash == token_hash,
            OAuthTokenEntity.revoked.is_(False),
        )
        result = await session.execute(stmt)
        entity = result.scalar_one_or_none()

    if entity is None:
        return None

    entity.revoked = True
    await session.flush()
    return entity


async def resolve_grant(
    session: AsyncSession, sealer: Sealer, access_token: str
) -> ResolvedGrant | None:
    """Map a live downstream access token to its grant and upstream tokens."""
    stmt = select(OAuthTokenEntity).where(
        OAuthTokenEntity.access_token_hash == hash_token(access_token),
        OAuthTokenEntity.revoked.is_(False),
    )
    result = await session.execute(stmt)
    entity = result.scalar_one_or_none()
    if entity is None or _expired(entity.expires_at):
        return None
    return ResolvedGrant(
        client_id=entity.client_id,
        user_id=entity.user_id,
        label=entity.label,
        scope=entity.scope,
        props=open_props(sealer, entity),
    )
