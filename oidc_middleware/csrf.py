"""
Synchronizer-token CSRF protection for the login view and login form.
The token lives in the session; forms post it back as `_csrf` (or the X-CSRF-Token header).
"""
import hmac
import secrets

from fastapi import Request

from oidc_middleware.errors import CSRFError
from oidc_middleware.session import CSRF_KEY, SessionStore

SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}
FORM_FIELD = "_csrf"
HEADER = "x-csrf-token"


class CSRFProtect:
    def token(self, session: SessionStore) -> str:
        """Token for this session, created on first use."""
        token = session.get(CSRF_KEY)
        if not token:
            token = secrets.token_urlsafe(32)
            session.set(CSRF_KEY, token)
        return token

    async def protect(self, request: Request, session: SessionStore) -> str:
        """
        Safe methods: return the session token (for rendering into a form).
        Others: the submitted token must match, else CSRFError.
        """
        if request.method in SAFE_METHODS:
            return self.token(session)
        expected = session.get(CSRF_KEY)
        submitted = request.headers.get(HEADER)
        if not submitted:
            form = await request.form()
            submitted = form.get(FORM_FIELD)
        if not expected or not isinstance(submitted, str):
            raise CSRFError("invalid csrf token")
        if not hmac.compare_digest(expected.encode(), submitted.encode()):
            raise CSRFError("invalid csrf token")
        return expected
