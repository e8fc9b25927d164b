"""
Per-session key-value capability used by the middleware.
The default adapter wraps Starlette's request.session (SessionMiddleware must be installed).
"""
from typing import Any, Protocol

from fastapi import Request

# Where the post-login "return to" path is kept (passport convention)
RETURN_TO_KEY = "returnTo"
USER_CONTEXT_KEY = "userContext"
CSRF_KEY = "oidc:csrf"


class SessionStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class RequestSession:
    """SessionStore over the mapping Starlette attaches to the request."""

    def __init__(self, request: Request):
        if "session" not in request.scope:
            raise RuntimeError("oidc_middleware requires starlette SessionMiddleware to be installed")
        self._data = request.session

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)
