"""
Route guard: FastAPI dependency factory that requires a logged-in session.
JSON clients get 401; browsers are redirected to login with the current path remembered.
"""
from typing import Any, Callable

from fastapi import HTTPException, Request, status

from oidc_middleware.redirects import append_query, build_redirect_target
from oidc_middleware.session import RETURN_TO_KEY
from oidc_middleware.user_context import UserContext, get_user_context


def preferred_media_type(accept: str | None) -> str:
    """Most preferred type in an Accept header (highest q, first on ties)."""
    if not accept:
        return "*/*"
    candidates = []
    for index, part in enumerate(accept.split(",")):
        pieces = [p.strip() for p in part.split(";")]
        media_type = pieces[0].lower()
        if not media_type:
            continue
        q = 1.0
        for param in pieces[1:]:
            name, _, value = param.partition("=")
            if name.strip() == "q":
                try:
                    q = float(value)
                except ValueError:
                    q = 0.0
        if q > 0:
            candidates.append((-q, index, media_type))
    if not candidates:
        return "*/*"
    return min(candidates)[2]


def _request_path(request: Request) -> str:
    path = request.scope["path"]
    query = request.scope.get("query_string", b"").decode("latin-1")
    return f"{path}?{query}" if query else path


def ensure_authenticated(
    context: Any,
    redirect_to: str | None = None,
    login_hint: str | None = None,
) -> Callable[[Request], Any]:
    """
    Build a dependency returning the UserContext of the session.

    Usage:
        @app.get("/protected")
        def protected(user=Depends(oidc.ensure_authenticated())):
            ...
    """

    async def _check(request: Request) -> UserContext:
        session = context.session_factory(request)
        user = get_user_context(session)
        if user is not None:
            request.state.user_context = user
            return user
        if preferred_media_type(request.headers.get("accept")) == "application/json":
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
        session.set(RETURN_TO_KEY, build_redirect_target(_request_path(request), "/"))
        url = redirect_to or f"{context.config.app_base_url}{context.config.routes.login.path}"
        url = append_query(url, {"login_hint": login_hint})
        raise HTTPException(status_code=status.HTTP_302_FOUND, headers={"Location": url})

    return _check
