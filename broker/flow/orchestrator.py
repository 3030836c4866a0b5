"""Authorization flow state machine: authorize, consent, callback.

A transaction moves ``awaiting_consent -> awaiting_callback`` and ends either
in a completed downstream grant or in a terminal error. Each step consumes
the stored bundle before acting on it, so a duplicated request never sees
live state and every failure leaves nothing behind to replay.
"""

import logging
import secrets
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from typing import Protocol

from broker.core.errors import (
    BrokerError,
    ConsentForgery,
    ExpiredOrUnknownTransaction,
    InvalidOrExpiredTransaction,
    InvalidRequest,
    UnknownClient,
)
from broker.core.settings import BrokerSettings, UpstreamSettings
from broker.core.urls import add_query_params
from broker.crypto.pkce import (
    code_challenge,
    random_code_verifier,
    random_nonce,
    random_state,
    random_token,
)
from broker.flow.consent import CONSENT_ACTION_APPROVE
from broker.flow.transactions import TransactionStore, fingerprint
from broker.flow.types import (
    ClientInfo,
    ConsentDecision,
    ConsentPrompt,
    DownstreamAuthRequest,
    GrantProps,
    IssuedGrant,
    PendingAuthorization,
    TransactionStage,
)
from broker.upstream.client import UpstreamOIDCClient

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("broker.audit")


class AuthorizationLayer(Protocol):
    """The downstream OAuth server the broker completes grants into."""

    def parse_auth_request(self, params: Mapping[str, str]) -> DownstreamAuthRequest:
        """Parse and validate a downstream authorization request."""
        ...

    async def lookup_client(self, client_id: str) -> ClientInfo | None:
        """Return display metadata for a registered client."""
        ...

    async def complete_authorization(
        self, request: DownstreamAuthRequest, grant: IssuedGrant
    ) -> str:
        """Mint the downstream grant and return the client redirect URL."""
        ...


def _matches(presented: str | None, expected: str) -> bool:
    if not presented or not expected:
        return False
    return secrets.compare_digest(presented, expected)


class FlowOrchestrator:
    """Threads one transaction through store, consent, upstream and grant."""

    def __init__(
        self,
        settings: BrokerSettings,
        upstream_settings: UpstreamSettings,
        store: TransactionStore,
        upstream: UpstreamOIDCClient,
        layer: AuthorizationLayer,
    ) -> None:
        self._settings = settings
        self._upstream_settings = upstream_settings
        self._store = store
        self._upstream = upstream
        self._layer = layer

    async def authorize(self, params: Mapping[str, str]) -> ConsentPrompt:
        """Validate the downstream request and open a transaction."""
        request = self._layer.parse_auth_request(params)
        client = await self._layer.lookup_client(request.client_id)
        if client is None:
            raise UnknownClient(f"unknown client_id {request.client_id!r}")
        if request.redirect_uri not in client.redirect_uris:
            raise InvalidRequest(
                f"redirect_uri not registered for client {request.client_id!r}"
            )

        verifier = random_code_verifier()
        now = datetime.now(UTC)
        pending = PendingAuthorization(
            transaction_id=random_state(),
            consent_token=random_state(),
            session_binding=random_token(),
            code_verifier=verifier,
            code_challenge=code_challenge(verifier),
            nonce=random_nonce(),
            request=request,
            created_at=now,
            expires_at=now + timedelta(seconds=self._settings.transaction_ttl),
        )
        await self._store.create(pending)
        logger.info(
            "Opened transaction %s for client %s",
            fingerprint(pending.transaction_id),
            request.client_id,
        )
        scopes = request.scope.split() or self._upstream_settings.scope.split()
        return ConsentPrompt(pending=pending, client=client, scopes=scopes)

    async def consent(
        self,
        transaction_id: str,
        consent_token: str,
        action: str,
        binding: str | None,
    ) -> ConsentDecision:
        """Apply the user's decision from the consent form."""
        if not transaction_id:
            raise ExpiredOrUnknownTransaction("missing transaction_state")

        pending = await self._store.consume(transaction_id)
        if pending is None or pending.stage != TransactionStage.AWAITING_CONSENT:
            raise ExpiredOrUnknownTransaction(
                "no transaction awaiting consent", transaction_id=transaction_id
            )

        tag = fingerprint(transaction_id)
        if not _matches(binding, pending.session_binding) or not _matches(
            consent_token, pending.consent_token
        ):
            audit_logger.warning("Consent forgery rejected for transaction %s", tag)
            raise ConsentForgery(
                "consent token or session binding mismatch",
                transaction_id=transaction_id,
            )

        request = pending.request
        if action != CONSENT_ACTION_APPROVE:
            audit_logger.info(
                "User denied client %s (transaction %s)", request.client_id, tag
            )
            url = add_query_params(
                request.redirect_uri,
                {
                    "error": "access_denied",
                    "error_description": "User denied the request",
                    "state": request.state,
                },
            )
            return ConsentDecision(redirect_url=url, approved=False)

        try:
            metadata = await self._upstream.discover()
        except BrokerError as exc:
            exc.transaction_id = transaction_id
            raise

        advanced = pending.model_copy(
            update={"stage": TransactionStage.AWAITING_CALLBACK, "consent_token": ""}
        )
        await self._store.create(advanced)
        audit_logger.info(
            "User approved client %s (transaction %s)", request.client_id, tag
        )
        url = self._upstream.build_authorization_url(
            metadata, advanced, self._settings.callback_url
        )
        return ConsentDecision(redirect_url=url, approved=True)

    async def callback(self, params: Mapping[str, str], binding: str | None) -> str:
        """Finish the upstream leg and complete the downstream grant."""
        state = params.get("state")
        if not state:
            raise InvalidOrExpiredTransaction("callback without state")

        pending = await self._store.consume(state)
        tag = fingerprint(state)
        if pending is None:
            audit_logger.warning("Callback for unknown or replayed transaction %s", tag)
            raise InvalidOrExpiredTransaction(
                "no live transaction for state", transaction_id=state
            )
        if pending.stage != TransactionStage.AWAITING_CALLBACK:
            raise InvalidOrExpiredTransaction(
                "transaction has not been approved", transaction_id=state
            )
        if not _matches(binding, pending.session_binding):
            audit_logger.warning("Callback without session binding for %s", tag)
            raise InvalidOrExpiredTransaction(
                "session binding mismatch", transaction_id=state
            )

        try:
            metadata = await self._upstream.discover()
            code = self._upstream.validate_authorization_response(
                metadata, params, pending.transaction_id
            )
            token_set = await self._upstream.exchange_code(
                metadata, code, pending.code_verifier, self._settings.callback_url
            )
            claims = await self._upstream.validate_id_token(
                metadata, token_set.id_token, pending.nonce
            )
        except BrokerError as exc:
            exc.transaction_id = state
            audit_logger.warning(
                "Upstream leg failed for transaction %s: %s", tag, type(exc).__name__
            )
            raise

        grant = IssuedGrant(
            user_id=claims.sub,
            label=claims.label,
            scope=pending.request.scope,
            props=GrantProps(claims=claims, token_set=token_set),
        )
        redirect_to = await self._layer.complete_authorization(pending.request, grant)
        audit_logger.info(
            "Completed grant for %s to client %s (transaction %s)",
            claims.sub,
            pending.request.client_id,
            tag,
        )
        return redirect_to
