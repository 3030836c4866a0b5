"""ID token verification against the provider's JWKS."""

import secrets

import jwt
from pydantic import ValidationError

from broker.core.errors import InvalidIdToken
from broker.upstream.types import IdentityClaims

CLOCK_SKEW_SECONDS = 60
REQUIRED_CLAIMS = ["exp", "iat", "iss", "aud", "sub"]


def _select_key(jwk_set: jwt.PyJWKSet, kid: str | None) -> jwt.PyJWK:
    """Pick the signing key named by the token header."""
    if kid is None:
        if len(jwk_set.keys) == 1:
            return jwk_set.keys[0]
        raise InvalidIdToken("id_token has no kid and the JWKS is ambiguous")
    for key in jwk_set.keys:
        if key.key_id == kid:
            return key
    raise InvalidIdToken(f"no JWKS key matches kid {kid!r}")


def verify_id_token(
    id_token: str,
    jwks: dict,
    *,
    issuer: str,
    client_id: str,
    algorithms: list[str],
    expected_nonce: str | None,
) -> IdentityClaims:
    """Verify signature, issuer, audience, expiry and nonce of an id_token.

    ``expected_nonce`` is None only for refresh responses, which carry no
    nonce of their own.
    """
    try:
        header = jwt.get_unverified_header(id_token)
        jwk_set = jwt.PyJWKSet.from_dict(jwks)
        key = _select_key(jwk_set, header.get("kid"))
        raw = jwt.decode(
            id_token,
            key.key,
            algorithms=algorithms,
            audience=client_id,
            issuer=issuer,
            leeway=CLOCK_SKEW_SECONDS,
            options={"require": REQUIRED_CLAIMS},
        )
    except jwt.PyJWTError as exc:
        raise InvalidIdToken(f"id_token rejected: {exc}") from exc

    aud = raw.get("aud")
    if isinstance(aud, list) and len(aud) > 1 and raw.get("azp") != client_id:
        raise InvalidIdToken("azp does not match client_id")

    nonce = raw.pop("nonce", None)
    if expected_nonce is not None:
        if not isinstance(nonce, str) or not secrets.compare_digest(
            nonce, expected_nonce
        ):
            raise InvalidIdToken("nonce mismatch")

    try:
        return IdentityClaims.model_validate(raw)
    except ValidationError as exc:
        raise InvalidIdToken(f"id_token claims incomplete: {exc}") from exc
