"""Browser-facing flow endpoints: authorize, consent, upstream callback."""

from typing import Annotated

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel
from starlette.responses import Response

from broker.core.cookies import (
    clear_transaction_cookie,
    cookie_name_for,
    set_transaction_cookie,
)
from broker.core.deps import (
    get_broker_settings,
    get_transaction_store,
    get_upstream_client,
    get_upstream_settings,
)
from broker.core.settings import BrokerSettings, UpstreamSettings
from broker.flow.consent import render_consent
from broker.flow.orchestrator import FlowOrchestrator
from broker.flow.transactions import TransactionStore
from broker.oauth.provider import DownstreamAuthorizer, get_authorization_layer
from broker.upstream.client import UpstreamOIDCClient

router = APIRouter()

HTTP_FOUND = 302


class _ConsentForm(BaseModel):
    """Bundle form fields posted by the consent page."""

    transaction_state: str = ""
    consent_token: str = ""
    consent_action: str = ""


def get_orchestrator(
    settings: Annotated[BrokerSettings, Depends(get_broker_settings)],
    upstream_settings: Annotated[UpstreamSettings, Depends(get_upstream_settings)],
    store: Annotated[TransactionStore, Depends(get_transaction_store)],
    upstream: Annotated[UpstreamOIDCClient, Depends(get_upstream_client)],
    layer: Annotated[DownstreamAuthorizer, Depends(get_authorization_layer)],
) -> FlowOrchestrator:
    return FlowOrchestrator(settings, upstream_settings, store, upstream, layer)


@router.get("/authorize", response_model=None)
async def authorize(
    request: Request,
    settings: Annotated[BrokerSettings, Depends(get_broker_settings)],
    flow: Annotated[FlowOrchestrator, Depends(get_orchestrator)],
) -> Response:
    """GET /authorize -- open a transaction and show the consent page."""
    prompt = await flow.authorize(request.query_params)
    response = render_consent(request, prompt)
    pending = prompt.pending
    set_transaction_cookie(
        response, pending.transaction_id, pending.session_binding, settings
    )
    return response


@router.post("/authorize/consent", response_model=None)
async def consent(
    request: Request,
    settings: Annotated[BrokerSettings, Depends(get_broker_settings)],
    flow: Annotated[FlowOrchestrator, Depends(get_orchestrator)],
    form: Annotated[_ConsentForm, Form()],
) -> RedirectResponse:
    """POST /authorize/consent -- approve or deny the pending request."""
    transaction_id = form.transaction_state
    binding = (
        request.cookies.get(cookie_name_for(transaction_id))
        if transaction_id
        else None
    )
    decision = await flow.consent(
        transaction_id, form.consent_token, form.consent_action, binding
    )
    response = RedirectResponse(url=decision.redirect_url, status_code=HTTP_FOUND)
    if not decision.approved:
        clear_transaction_cookie(response, transaction_id, settings)
    return response


@router.get("/callback", name="upstream_callback", response_model=None)
async def callback(
    request: Request,
    settings: Annotated[BrokerSettings, Depends(get_broker_settings)],
    flow: Annotated[FlowOrchestrator, Depends(get_orchestrator)],
) -> RedirectResponse:
    """GET /callback -- finish the upstream leg and redirect to the client."""
    state = request.query_params.get("state")
    binding = request.cookies.get(cookie_name_for(state)) if state else None
    redirect_to = await flow.callback(request.query_params, binding)
    response = RedirectResponse(url=redirect_to, status_code=HTTP_FOUND)
    if state:
        clear_transaction_cookie(response, state, settings)
    return response
