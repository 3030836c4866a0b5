"""Type definitions for upstream OIDC operations."""

from pydantic import BaseModel, ConfigDict


class AuthorizationServerMetadata(BaseModel):
    """Subset of the provider's openid-configuration the broker relies on."""

    model_config = ConfigDict(extra="ignore")

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    revocation_endpoint: str | None = None
    userinfo_endpoint: str | None = None
    code_challenge_methods_supported: list[str] | None = None


class UpstreamTokenSet(BaseModel):
    """Tokens returned by the identity provider's token endpoint."""

    access_token: str
    id_token: str | None = None
    refresh_token: str | None = None
    access_token_ttl: int | None = None
    token_type: str = "Bearer"
    scope: str | None = None


class IdentityClaims(BaseModel):
    """Validated ID-token claims. The nonce is checked, then dropped."""

    model_config = ConfigDict(extra="allow")

    sub: str
    iss: str
    aud: str | list[str]
    name: str | None = None
    email: str | None = None

    @property
    def label(self) -> str:
        """Display label for the grant: name, then email, then subject."""
        return self.name or self.email or self.sub
