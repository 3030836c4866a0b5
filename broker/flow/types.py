"""Type definitions for the authorization flow."""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel

from broker.upstream.types import IdentityClaims, UpstreamTokenSet


class TransactionStage(StrEnum):
    AWAITING_CONSENT = "awaiting_consent"
    AWAITING_CALLBACK = "awaiting_callback"


class GrantType(StrEnum):
    AUTHORIZATION_CODE = "authorization_code"
    REFRESH_TOKEN = "refresh_token"


class DownstreamAuthRequest(BaseModel):
    """Parsed authorization request from the downstream client."""

    response_type: str = "code"
    client_id: str
    redirect_uri: str
    scope: str = ""
    state: str | None = None
    code_challenge: str
    code_challenge_method: str = "S256"


class ClientInfo(BaseModel):
    """Display metadata of a registered downstream client."""

    client_id: str
    client_name: str | None = None
    logo_uri: str | None = None
    client_uri: str | None = None
    redirect_uris: list[str] = []


class PendingAuthorization(BaseModel):
    """Everything one transaction needs between authorize and callback."""

    transaction_id: str
    consent_token: str
    session_binding: str
    code_verifier: str
    code_challenge: str
    nonce: str
    request: DownstreamAuthRequest
    stage: TransactionStage = TransactionStage.AWAITING_CONSENT
    created_at: datetime
    expires_at: datetime


class ConsentPrompt(BaseModel):
    """What the consent page needs to render."""

    pending: PendingAuthorization
    client: ClientInfo
    scopes: list[str]


class GrantProps(BaseModel):
    """Property bag carried by a downstream grant."""

    claims: IdentityClaims
    token_set: UpstreamTokenSet


class IssuedGrant(BaseModel):
    """Input for minting the downstream grant once a flow completes."""

    user_id: str
    label: str
    scope: str
    props: GrantProps


class TokenExchangeResult(BaseModel):
    """Replacement props and lifetime for a downstream token issuance."""

    props: GrantProps
    access_token_ttl: int | None = None


class ConsentDecision(BaseModel):
    """Where to send the user agent after the consent form."""

    redirect_url: str
    approved: bool
