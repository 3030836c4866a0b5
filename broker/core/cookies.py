"""Transaction cookie naming and attributes."""

from starlette.responses import Response

from broker.core.settings import BrokerSettings
from broker.crypto.pkce import hash_token

COOKIE_PREFIX = "broker_txn_"
COOKIE_NAME_HASH_CHARS = 32


def cookie_name_for(transaction_id: str) -> str:
    """Per-transaction cookie name that does not reveal the id."""
    return COOKIE_PREFIX + hash_token(transaction_id)[:COOKIE_NAME_HASH_CHARS]


def set_transaction_cookie(
    response: Response,
    transaction_id: str,
    binding: str,
    settings: BrokerSettings,
) -> None:
    """Attach the session-binding cookie for a freshly created transaction."""
    dev = settings.is_development
    response.set_cookie(
        cookie_name_for(transaction_id),
        binding,
        max_age=settings.transaction_ttl,
        path="/",
        httponly=True,
        secure=not dev,
        samesite="lax" if dev else "none",
    )


def clear_transaction_cookie(
    response: Response, transaction_id: str, settings: BrokerSettings
) -> None:
    """Expire the transaction cookie on consumption, denial or failure."""
    dev = settings.is_development
    response.delete_cookie(
        cookie_name_for(transaction_id),
        path="/",
        httponly=True,
        secure=not dev,
        samesite="lax" if dev else "none",
    )
