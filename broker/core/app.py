"""FastAPI application factory for the OIDC consent broker."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from broker.core.errors import BrokerError, build_error_handler
from broker.core.settings import BrokerSettings, UpstreamSettings
from broker.crypto.sealing import Sealer
from broker.db.engine import create_schema, get_session_factory
from broker.flow.routes import router as flow_router
from broker.flow.transactions import (
    InMemoryTransactionStore,
    SqlTransactionStore,
    TransactionStore,
)
from broker.oauth.routes_discovery import router as discovery_router
from broker.oauth.routes_revoke import router as revoke_router
from broker.oauth.routes_token import router as token_router
from broker.oauth.routes_userinfo import router as userinfo_router

TRANSACTION_BACKEND_DATABASE = "database"


def _build_store(settings: BrokerSettings, sealer: Sealer) -> TransactionStore:
    if settings.transaction_backend == TRANSACTION_BACKEND_DATABASE:
        return SqlTransactionStore(get_session_factory(), sealer)
    return InMemoryTransactionStore()


def create_app(
    settings: BrokerSettings | None = None,
    upstream_settings: UpstreamSettings | None = None,
) -> FastAPI:
    """Build and configure the FastAPI application.

    Raises ValueError when the upstream provider is not configured.
    """
    settings = settings or BrokerSettings()
    upstream_settings = upstream_settings or UpstreamSettings()
    upstream_settings.validate_required()
    logging.basicConfig(level=settings.log_level.upper())
    sealer = Sealer.from_settings_key(settings.sealing_key)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await create_schema()
        yield

    app = FastAPI(
        title="OIDC Consent Broker",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.upstream_settings = upstream_settings
    app.state.sealer = sealer
    app.state.transactions = _build_store(settings, sealer)

    origins = settings.get_cors_origin_list()
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST"],
            allow_headers=["Authorization", "Content-Type"],
        )

    app.add_exception_handler(BrokerError, build_error_handler(settings))

    app.include_router(discovery_router)
    app.include_router(flow_router)
    app.include_router(token_router)
    app.include_router(userinfo_router)
    app.include_router(revoke_router)

    return app
