"""Broker error taxonomy and the plain-text error handler."""

import logging
from collections.abc import Awaitable, Callable

from fastapi import Request
from starlette.responses import PlainTextResponse

from broker.core.cookies import clear_transaction_cookie
from broker.core.settings import BrokerSettings

logger = logging.getLogger(__name__)

HTTP_BAD_REQUEST = 400
HTTP_FORBIDDEN = 403
HTTP_BAD_GATEWAY = 502


class BrokerError(Exception):
    """Terminal failure of one flow step.

    ``message`` is what the user agent sees; ``detail`` only goes to the log.
    ``transaction_id`` is set when the failure is tied to a live transaction
    so the handler can clear its cookie.
    """

    status_code = HTTP_BAD_REQUEST
    message = "Invalid request"

    def __init__(
        self,
        detail: str | None = None,
        *,
        transaction_id: str | None = None,
    ) -> None:
        super().__init__(detail or self.message)
        self.detail = detail or self.message
        self.transaction_id = transaction_id


class ClientError(BrokerError):
    """Malformed or unknown downstream client request."""


class InvalidRequest(ClientError):
    message = "Invalid request"


class UnknownClient(ClientError):
    message = "Invalid client"


class TransactionError(BrokerError):
    """Expired, unknown or replayed transaction."""

    message = "Invalid or expired transaction"


class ExpiredOrUnknownTransaction(TransactionError):
    pass


class InvalidOrExpiredTransaction(TransactionError):
    message = "Invalid transaction state or session expired"


class ConsentForgery(BrokerError):
    status_code = HTTP_FORBIDDEN
    message = "Invalid consent token"


class UpstreamError(BrokerError):
    """Failure reported by, or while talking to, the identity provider."""

    message = "Authentication with the identity provider failed"


class DiscoveryError(UpstreamError):
    status_code = HTTP_BAD_GATEWAY
    message = "Identity provider is unavailable"


class UpstreamAuthorizationError(UpstreamError):
    pass


class TokenExchangeError(UpstreamError):
    pass


class InvalidIdToken(UpstreamError):
    message = "Received invalid id_token from the identity provider"


class RefreshError(BrokerError):
    """Refresh grant failed; the user has to run the full flow again."""

    message = "Refresh failed, re-authentication required"


class NoRefreshToken(RefreshError):
    message = "No refresh token available"


class NoUpstreamRefreshToken(RefreshError):
    message = "No upstream refresh token found"


def build_error_handler(
    settings: BrokerSettings,
) -> Callable[[Request, Exception], Awaitable[PlainTextResponse]]:
    """Return an exception handler rendering BrokerError as plain text."""

    async def handle_broker_error(
        _request: Request, exc: Exception
    ) -> PlainTextResponse:
        assert isinstance(exc, BrokerError)
        logger.warning("%s: %s", type(exc).__name__, exc.detail)
        response = PlainTextResponse(exc.message, status_code=exc.status_code)
        if exc.transaction_id:
            clear_transaction_cookie(response, exc.transaction_id, settings)
        return response

    return handle_broker_error
