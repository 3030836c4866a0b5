"""PKCE verifiers and challenges, state values, nonces."""

import hashlib
import secrets
from base64 import urlsafe_b64encode

# 32 random bytes -> 43 base64url characters, the PKCE minimum length.
VERIFIER_BYTES = 32
STATE_BYTES = 32
NONCE_BYTES = 32
VERIFIER_MIN_LENGTH = 43
VERIFIER_MAX_LENGTH = 128


def _b64url(raw: bytes) -> str:
    return urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def random_code_verifier() -> str:
    """Generate a PKCE code verifier (RFC 7636, unreserved characters)."""
    return _b64url(secrets.token_bytes(VERIFIER_BYTES))


def code_challenge(verifier: str) -> str:
    """Derive the S256 code challenge for a verifier."""
    if not VERIFIER_MIN_LENGTH <= len(verifier) <= VERIFIER_MAX_LENGTH:
        raise ValueError("code_verifier length must be between 43 and 128")
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return _b64url(digest)


def verify_pkce(code_verifier: str, challenge: str) -> bool:
    """Verify S256 PKCE: SHA256(verifier) == challenge."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return secrets.compare_digest(_b64url(digest), challenge)


def random_state() -> str:
    """Generate an unguessable state / transaction identifier."""
    return _b64url(secrets.token_bytes(STATE_BYTES))


def random_nonce() -> str:
    """Generate an OIDC nonce."""
    return _b64url(secrets.token_bytes(NONCE_BYTES))


def random_token(num_bytes: int = 32) -> str:
    """Generate an opaque URL-safe token (codes, consent tokens, bindings)."""
    return secrets.token_urlsafe(num_bytes)


def hash_token(token: str) -> str:
    """SHA-256 hex digest: storage key for tokens, codes and transaction ids."""
    return hashlib.sha256(token.encode()).hexdigest()
