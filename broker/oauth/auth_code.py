"""Downstream authorization code creation and redemption with PKCE."""

from datetime import UTC, datetime, timedelta

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from broker.core.settings import AUTH_CODE_TTL_DEFAULT
from broker.crypto.pkce import hash_token, random_token, verify_pkce
from broker.crypto.sealing import Sealer
from broker.db.models_oauth import AuthorizationCodeEntity
from broker.flow.types import GrantProps


class AuthCodeParams(BaseModel):
    """Parameters for creating an authorization code."""

    client_id: str
    user_id: str
    label: str
    redirect_uri: str
    scope: str
    code_challenge: str
    props: GrantProps
    ttl_seconds: int = AUTH_CODE_TTL_DEFAULT


class RedeemedCode(BaseModel):
    """A successfully redeemed code with its unsealed props."""

    client_id: str
    user_id: str
    label: str
    scope: str
    props: GrantProps


def generate_code() -> str:
    """Generate a cryptographically random authorization code."""
    return random_token(32)


async def create_authorization_code(
    session: AsyncSession, sealer: Sealer, params: AuthCodeParams
) -> str:
    """Create and store a new authorization code; only its hash is persisted."""
    code = generate_code()
    entity = AuthorizationCodeEntity(
        code_hash=hash_token(code),
        client_id=params.client_id,
        user_id=params.user_id,
        label=params.label,
        redirect_uri=params.redirect_uri,
        scope=params.scope,
        code_challenge=params.code_challenge,
        code_challenge_method="S256",
        sealed_props=sealer.seal(params.props.model_dump_json()),
        expires_at=datetime.now(UTC) + timedelta(seconds=params.ttl_seconds),
        used=False,
    )
    session.add(entity)
    await session.flush()
    return code


def _is_code_invalid(
    entity: AuthorizationCodeEntity,
    client_id: str,
    redirect_uri: str,
    code_verifier: str,
) -> bool:
    """Return True if the code cannot be redeemed."""
    if entity.used or entity.client_id != client_id:
        return True
    if entity.redirect_uri != redirect_uri:
        return True
    now = datetime.now(UTC)
    expiry = entity.expires_at
    if expiry.tzinfo is None:
        now = now.replace(tzinfo=None)
    if now > expiry:
        return True
    return not verify_pkce(code_verifier, entity.code_challenge)


async def redeem_authorization_code(
    session: AsyncSession,
    sealer: Sealer,
    *,
    code: str,
    client_id: str,
    redirect_uri: str,
    code_verifier: str,
) -> RedeemedCode | None:
    """Redeem an auth code. Returns None if invalid.

    A presented code is burned even when the redemption fails, so a
    guessed verifier cannot be retried against it.
    """
    stmt = select(AuthorizationCodeEntity).where(
        AuthorizationCodeEntity.code_hash == hash_token(code)
    )
    result = await session.execute(stmt)
    entity = result.scalar_one_or_none()

    if entity is None:
        return None
    invalid = _is_code_invalid(entity, client_id, redirect_uri, code_verifier)
    entity.used = True
    await session.flush()
    if invalid:
        return None

    return RedeemedCode(
        client_id=entity.client_id,
        user_id=entity.user_id,
        label=entity.label,
        scope=entity.scope,
        props=GrantProps.model_validate_json(sealer.unseal(entity.sealed_props)),
    )
