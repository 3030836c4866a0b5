"""OAuth authorization server metadata builder (RFC 8414)."""

from broker.core.settings import BrokerSettings, UpstreamSettings
from broker.oauth.types import AuthorizationServerMetadata


def build_metadata(
    settings: BrokerSettings, upstream_settings: UpstreamSettings
) -> AuthorizationServerMetadata:
    """Build the metadata document downstream clients discover the broker by."""
    issuer = settings.public_url.rstrip("/")
    return AuthorizationServerMetadata(
        issuer=issuer,
        authorization_endpoint=f"{issuer}/authorize",
        token_endpoint=f"{issuer}/token",
        revocation_endpoint=f"{issuer}/revoke",
        userinfo_endpoint=f"{issuer}/userinfo",
        response_types_supported=["code"],
        grant_types_supported=["authorization_code", "refresh_token"],
        token_endpoint_auth_methods_supported=["none"],
        code_challenge_methods_supported=["S256"],
        scopes_supported=upstream_settings.scope.split(),
    )
