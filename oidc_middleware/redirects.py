"""
Authorization redirect and post-login redirect targets.
state/nonce generation and open-redirect neutralization.
"""
import re
import secrets
from typing import Any, Mapping
from urllib.parse import urlencode, urlsplit, urlunsplit

from oidc_middleware.config import OIDCConfig
from oidc_middleware.flow_store import CorrelationRecord, store_flow
from oidc_middleware.session import SessionStore

# Query parameters from the login route that may be forwarded to the authorization server
ALLOWED_LOGIN_OPTIONS = ("login_hint",)

_LEADING_SLASHES = re.compile(r"^/+")


def generate_state() -> str:
    """Opaque value round-tripped through the authorization server; correlates the callback."""
    return secrets.token_urlsafe(32)


def generate_nonce() -> str:
    """Random value bound into the ID token; replay defense."""
    return secrets.token_urlsafe(32)


def filter_login_options(query: Mapping[str, Any]) -> dict[str, Any]:
    """Keep only allow-listed options; everything else is dropped silently."""
    return {k: query[k] for k in ALLOWED_LOGIN_OPTIONS if k in query and query[k] not in (None, "")}


def build_authorization_redirect(
    session: SessionStore,
    config: OIDCConfig,
    client: Any,
    options: Mapping[str, Any] | None = None,
) -> str:
    """
    Start a new login attempt: fresh state and nonce stored under the session key
    (replacing any attempt in flight), then the authorization URL from the OIDC client.
    """
    state = generate_state()
    nonce = generate_nonce()
    store_flow(session, config.session_key, CorrelationRecord(state=state, nonce=nonce))
    params = {
        "client_id": config.client_id,
        "redirect_uri": config.login_redirect_uri,
        "scope": " ".join(config.scope),
        "response_type": config.response_type,
        "nonce": nonce,
        "state": state,
    }
    if options:
        params.update({k: v for k, v in options.items() if v is not None})
    return client.authorization_url(params)


def build_redirect_target(candidate: str | None, fallback: str) -> str:
    """
    Collapse a leading run of '/' into one so a protocol-relative value
    ('//evil.example') stays on this site ('/evil.example').
    """
    if not candidate:
        return fallback
    return _LEADING_SLASHES.sub("/", candidate)


def append_query(url: str, params: Mapping[str, Any]) -> str:
    """Add query parameters to url, keeping any it already has."""
    params = {k: v for k, v in params.items() if v is not None}
    if not params:
        return url
    parts = urlsplit(url)
    query = f"{parts.query}&{urlencode(params)}" if parts.query else urlencode(params)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))
