"""
Logout: revoke tokens at the issuer, tear down the local session, then RP-initiated
logout at the issuer's end_session_endpoint. Revocation failures never block teardown;
they go to the event channel.
"""
import asyncio
import hmac
import logging
from typing import Any, Callable

from fastapi import Request
from fastapi.responses import RedirectResponse, Response

from oidc_middleware.errors import AuthenticationError, OIDCMiddlewareError, RevocationError
from oidc_middleware.events import ERROR
from oidc_middleware.flow_store import CorrelationRecord, get_flow, store_flow
from oidc_middleware.redirects import generate_state
from oidc_middleware.responses import error_response
from oidc_middleware.strategy import bounded
from oidc_middleware.user_context import TokenSet, clear_user_context, get_user_context

logger = logging.getLogger(__name__)


async def revoke_tokens(context: Any, tokens: TokenSet) -> list[RevocationError]:
    """Revoke access and refresh tokens concurrently; returns (and emits) the failures."""
    hints = [(hint, getattr(tokens, hint)) for hint in ("access_token", "refresh_token")]
    hints = [(hint, token) for hint, token in hints if token]
    results = await asyncio.gather(
        *(bounded("revoke", context.client.revoke(token, hint), context.config.timeout) for hint, token in hints),
        return_exceptions=True,
    )
    failures = []
    for (hint, _), outcome in zip(hints, results):
        if outcome is None:
            continue
        if isinstance(outcome, RevocationError):
            err = outcome
        elif isinstance(outcome, OIDCMiddlewareError):
            err = RevocationError(f"Revocation of {hint} failed: {outcome.name}: {outcome}", hint)
            err.__cause__ = outcome
        else:
            raise outcome
        failures.append(err)
        context.events.emit(ERROR, err)
    return failures


def force_logout_and_revoke(context: Any) -> Callable[[Request], Any]:
    async def logout(request: Request) -> Response:
        try:
            await context.ready()
        except OIDCMiddlewareError as e:
            return error_response(context, request, e)
        config = context.config
        session = context.session_factory(request)

        user = get_user_context(session)
        id_token_hint = None
        if user is not None:
            id_token_hint = user.tokens.id_token
            await revoke_tokens(context, user.tokens)
        clear_user_context(session)

        state = generate_state()
        url = context.client.end_session_url(
            {
                "id_token_hint": id_token_hint,
                "post_logout_redirect_uri": config.logout_redirect_uri,
                "state": state,
            }
        )
        if url is None:
            session.delete(config.session_key)
            url = config.logout_redirect_uri
        else:
            store_flow(session, config.session_key, CorrelationRecord(state=state))
        logger.info("Logged out local session%s", "" if user is not None else " (no user context)")
        return RedirectResponse(url, status_code=302)

    return logout


def logout_callback(context: Any) -> Callable[[Request], Any]:
    """
    Dependency for the route the issuer returns to after logout. Checks the returned
    state against the pending logout; a mismatch is emitted, the request still proceeds.
    """

    async def _verify(request: Request) -> None:
        key = context.config.session_key
        session = context.session_factory(request)
        received = request.query_params.get("state")
        pending = CorrelationRecord.from_session(session.get(key))
        if pending is None or pending.nonce is not None:
            # No logout in flight (a login attempt may be)
            if received:
                context.events.emit(ERROR, AuthenticationError("logout state mismatch, no logout in session"))
            return
        get_flow(session, key)
        if not received or not hmac.compare_digest(pending.state.encode(), received.encode()):
            context.events.emit(
                ERROR, AuthenticationError(f"logout state mismatch, expected {pending.state}, got: {received}")
            )

    return _verify
