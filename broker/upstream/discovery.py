"""OpenID Connect discovery of the upstream identity provider."""

from pydantic import ValidationError

from broker.core.errors import DiscoveryError
from broker.upstream.types import AuthorizationServerMetadata

WELL_KNOWN_PATH = "/.well-known/openid-configuration"


def discovery_url(issuer: str) -> str:
    """Build the discovery document URL for an issuer."""
    return f"{issuer.rstrip('/')}{WELL_KNOWN_PATH}"


def parse_discovery(
    expected_issuer: str, document: object
) -> AuthorizationServerMetadata:
    """Validate a discovery document against the configured issuer."""
    if not isinstance(document, dict):
        raise DiscoveryError("discovery document is not a JSON object")
    try:
        metadata = AuthorizationServerMetadata.model_validate(document)
    except ValidationError as exc:
        raise DiscoveryError(f"malformed discovery document: {exc}") from exc
    if metadata.issuer != expected_issuer:
        raise DiscoveryError(
            f"issuer mismatch: expected {expected_issuer!r}, got {metadata.issuer!r}"
        )
    methods = metadata.code_challenge_methods_supported
    if methods is not None and "S256" not in methods:
        raise DiscoveryError("provider does not support S256 PKCE")
    return metadata
