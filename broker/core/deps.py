"""FastAPI dependencies for settings and shared broker capabilities."""

from typing import Annotated

from fastapi import Depends, Request

from broker.core.settings import BrokerSettings, UpstreamSettings
from broker.crypto.sealing import Sealer
from broker.flow.transactions import TransactionStore
from broker.upstream.client import UpstreamOIDCClient


def get_broker_settings(request: Request) -> BrokerSettings:
    return request.app.state.settings


def get_upstream_settings(request: Request) -> UpstreamSettings:
    return request.app.state.upstream_settings


def get_sealer(request: Request) -> Sealer:
    return request.app.state.sealer


def get_transaction_store(request: Request) -> TransactionStore:
    """The store built by ``create_app``, passed in rather than imported."""
    return request.app.state.transactions


def get_upstream_client(
    settings: Annotated[UpstreamSettings, Depends(get_upstream_settings)],
) -> UpstreamOIDCClient:
    return UpstreamOIDCClient(settings)
