"""Userinfo endpoint: identity claims behind a broker access token."""

from typing import Annotated

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.responses import JSONResponse

from broker.core.deps import get_sealer
from broker.crypto.sealing import Sealer
from broker.db.engine import get_session
from broker.oauth.token_service import resolve_grant

router = APIRouter()

HTTP_UNAUTHORIZED = 401


def _extract_bearer(request: Request) -> str | None:
    """Extract Bearer token from Authorization header."""
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth[len("Bearer ") :]
    return None


def _unauthorized() -> JSONResponse:
    return JSONResponse(
        {"error": "invalid_token"},
        status_code=HTTP_UNAUTHORIZED,
        headers={"WWW-Authenticate": 'Bearer error="invalid_token"'},
    )


@router.get("/userinfo")
async def userinfo(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_session)],
    sealer: Annotated[Sealer, Depends(get_sealer)],
) -> JSONResponse:
    """GET /userinfo -- claims of the user who granted this token."""
    token = _extract_bearer(request)
    if not token:
        return _unauthorized()

    grant = await resolve_grant(db, sealer, token)
    if grant is None:
        return _unauthorized()

    claims = grant.props.claims
    return JSONResponse(
        {
            **claims.model_dump(exclude_none=True),
            "label": grant.label,
            "scope": grant.scope,
        }
    )
