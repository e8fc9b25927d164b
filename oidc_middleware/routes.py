"""
Router with the login, login callback, logout and logout callback routes.
Every route waits for bootstrap, and answers middleware errors through the error stage.
"""
import inspect
import logging
from typing import Any, Callable

from fastapi import APIRouter, Request
from fastapi.responses import RedirectResponse, Response

from oidc_middleware.config import CallbackHandler
from oidc_middleware.errors import AuthenticationError, OIDCMiddlewareError
from oidc_middleware.logout import force_logout_and_revoke, logout_callback
from oidc_middleware.redirects import build_authorization_redirect, build_redirect_target, filter_login_options
from oidc_middleware.responses import error_response
from oidc_middleware.session import RETURN_TO_KEY, SessionStore
from oidc_middleware.user_context import store_user_context

logger = logging.getLogger(__name__)


def create_oidc_router(context: Any) -> APIRouter:
    routes = context.config.routes
    router = APIRouter(tags=["oidc"])
    router.add_api_route(
        routes.login_callback.path,
        create_login_callback_handler(context),
        methods=["GET"],
        include_in_schema=False,
    )
    router.add_api_route(routes.login.path, create_login_handler(context), methods=["GET", "POST"], include_in_schema=False)
    router.add_api_route(routes.logout.path, force_logout_and_revoke(context), methods=["POST"], include_in_schema=False)
    # "/" belongs to the host app; it attaches Depends(oidc.logout_callback()) itself
    if routes.logout_callback.path != "/":
        router.add_api_route(
            routes.logout_callback.path,
            create_logout_callback_handler(context),
            methods=["GET"],
            include_in_schema=False,
        )
    return router


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def create_login_handler(context: Any) -> Callable[[Request], Any]:
    async def login(request: Request) -> Response:
        try:
            await context.ready()
            session = context.session_factory(request)
            view_handler = context.config.routes.login.view_handler
            if request.method == "GET" and view_handler is not None:
                csrf_token = await context.csrf.protect(request, session)
                return await _resolve(view_handler(request, csrf_token))
            if request.method == "POST":
                # Custom login page posting a session token from its sign-in widget
                await context.csrf.protect(request, session)
                form = await request.form()
                options = {"sessionToken": form.get("sessionToken")}
            else:
                options = filter_login_options(request.query_params)
            url = build_authorization_redirect(session, context.config, context.client, options)
        except OIDCMiddlewareError as e:
            return error_response(context, request, e)
        return RedirectResponse(url, status_code=302)

    return login


def _pop_return_to(session: SessionStore) -> str | None:
    value = session.get(RETURN_TO_KEY)
    session.delete(RETURN_TO_KEY)
    if not value:
        return None
    return build_redirect_target(str(value), "/")


class CallbackContinuation:
    """
    `proceed` passed to custom callback handlers. Acts at most once: either records
    an error for the error stage or builds the final redirect.
    Plain call, no await: sync and async handlers use it the same way.
    """

    def __init__(self, session: SessionStore, default_target: str):
        self._session = session
        self._default_target = default_target
        self.called = False
        self.error: BaseException | None = None
        self.response: Response | None = None

    def __call__(self, error: BaseException | None = None, redirect_to: str | None = None) -> Response | None:
        if self.called:
            logger.warning("Login callback continuation called more than once; ignoring")
            return self.response
        self.called = True
        if error is not None:
            self.error = error
            return None
        target = redirect_to or _pop_return_to(self._session) or self._default_target
        self.response = RedirectResponse(target, status_code=302)
        return self.response


async def _run_custom_handler(
    context: Any,
    request: Request,
    session: SessionStore,
    handler: CallbackHandler,
    error: OIDCMiddlewareError | None,
) -> Response:
    after_callback = context.config.routes.login_callback.after_callback
    proceed = CallbackContinuation(session, after_callback or "/")
    if handler.kind == "errorAware":
        outcome = await _resolve(handler.fn(error, request, proceed))
    else:
        outcome = await _resolve(handler.fn(request, proceed))

    if isinstance(outcome, Response):
        # The handler answered itself; no redirect is written after it
        return outcome
    if not proceed.called:
        proceed(error)
    if proceed.error is not None:
        err = proceed.error
        if not isinstance(err, OIDCMiddlewareError):
            wrapped = AuthenticationError(str(err) or type(err).__name__)
            wrapped.__cause__ = err
            err = wrapped
        return error_response(context, request, err)
    return proceed.response


def create_login_callback_handler(context: Any) -> Callable[[Request], Any]:
    callback_route = context.config.routes.login_callback
    handler = callback_route.handler

    async def login_callback(request: Request) -> Response:
        try:
            await context.ready()
        except OIDCMiddlewareError as e:
            return error_response(context, request, e)
        session = context.session_factory(request)
        result = await context.strategy.authenticate(request.query_params, session)
        if result.ok:
            store_user_context(session, result.user)
            request.state.user_context = result.user

        if handler is not None and (result.ok or handler.kind == "errorAware"):
            return await _run_custom_handler(context, request, session, handler, result.error)

        if not result.ok:
            if callback_route.failure_redirect and handler is None:
                return RedirectResponse(callback_route.failure_redirect, status_code=302)
            return error_response(context, request, result.error)

        return_to = _pop_return_to(session)
        return RedirectResponse(callback_route.after_callback or return_to or "/", status_code=302)

    return login_callback


def create_logout_callback_handler(context: Any) -> Callable[[Request], Any]:
    verify = logout_callback(context)

    async def logout_callback_route(request: Request) -> Response:
        await verify(request)
        return RedirectResponse(context.config.routes.logout_callback.after_callback, status_code=302)

    return logout_callback_route
