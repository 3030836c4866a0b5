"""Type definitions for downstream token operations."""

from pydantic import BaseModel


class TokenResponse(BaseModel):
    """OAuth token endpoint response."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: str | None = None
    scope: str | None = None


class TokenIssuanceParams(BaseModel):
    """Bundled parameters for downstream token issuance."""

    client_id: str
    user_id: str
    label: str
    scope: str
    access_ttl: int = 3600
    refresh_ttl: int = 2_592_000


class AuthorizationServerMetadata(BaseModel):
    """RFC 8414 metadata advertised to downstream clients."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    revocation_endpoint: str
    userinfo_endpoint: str
    response_types_supported: list[str]
    grant_types_supported: list[str]
    token_endpoint_auth_methods_supported: list[str]
    code_challenge_methods_supported: list[str]
    scopes_supported: list[str]
