"""Consent page rendering."""

from pathlib import Path

from fastapi import Request
from fastapi.templating import Jinja2Templates
from starlette.responses import Response

from broker.core.urls import is_http_url
from broker.flow.types import ConsentPrompt

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"
CONSENT_TEMPLATE = "consent.html"

CONSENT_ACTION_APPROVE = "approve"
CONSENT_ACTION_DENY = "deny"

SECURITY_HEADERS = {
    "Cache-Control": "no-store",
    "X-Frame-Options": "DENY",
    "Content-Security-Policy": "frame-ancestors 'none'",
    "Referrer-Policy": "no-referrer",
}

templates = Jinja2Templates(directory=str(TEMPLATES_DIR))


def consent_context(prompt: ConsentPrompt) -> dict[str, object]:
    """Template variables; every string is escaped by Jinja autoescape."""
    client = prompt.client
    return {
        "client_name": client.client_name or client.client_id,
        "client_logo": client.logo_uri if is_http_url(client.logo_uri) else None,
        "client_uri": client.client_uri if is_http_url(client.client_uri) else "#",
        "redirect_uri": prompt.pending.request.redirect_uri,
        "scopes": prompt.scopes,
        "transaction_state": prompt.pending.transaction_id,
        "consent_token": prompt.pending.consent_token,
        "approve_action": CONSENT_ACTION_APPROVE,
        "deny_action": CONSENT_ACTION_DENY,
    }


def render_consent(request: Request, prompt: ConsentPrompt) -> Response:
    """Render the approval page for a pending authorization."""
    return templates.TemplateResponse(
        request,
        CONSENT_TEMPLATE,
        consent_context(prompt),
        headers=SECURITY_HEADERS,
    )
