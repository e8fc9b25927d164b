"""
Pytest configuration. A fake OIDC issuer (FastAPI app served through httpx.ASGITransport)
and a host app wired with the middleware, so the whole redirect/callback flow runs in-process.
"""
import asyncio
import base64
import secrets
import time
from types import SimpleNamespace
from typing import Any
from urllib.parse import parse_qs, urlsplit

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric.rsa import generate_private_key
from fastapi import Depends, FastAPI, Form, Request
from fastapi.responses import JSONResponse, Response
from starlette.middleware.sessions import SessionMiddleware

from oidc_middleware.middleware import OIDCMiddleware

ISSUER = "https://issuer.test"
CLIENT_ID = "test-client"
CLIENT_SECRET = "test-secret"
APP_BASE_URL = "https://app.test"
KID = "fake-issuer-key"

BASE_OPTIONS = {
    "issuer": ISSUER,
    "client_id": CLIENT_ID,
    "client_secret": CLIENT_SECRET,
    "app_base_url": APP_BASE_URL,
}

# One RSA key for the whole session; generation is slow
SIGNING_KEY = generate_private_key(65537, 2048)


def _b64(n: int) -> str:
    """Encode a positive int as base64url (JWK n/e)."""
    s = jwt.utils.base64url_encode(n.to_bytes((n.bit_length() + 7) // 8, "big"))
    return s.decode("utf-8")


def public_jwk(public_key, kid: str) -> dict:
    numbers = public_key.public_numbers()
    return {"kty": "RSA", "kid": kid, "alg": "RS256", "use": "sig", "n": _b64(numbers.n), "e": _b64(numbers.e)}


class FakeIssuer:
    """Minimal authorization server: discovery, JWKS, token, userinfo, revoke."""

    def __init__(self, *, userinfo: bool = True, end_session: bool = True, revocation: bool = True):
        self.userinfo_enabled = userinfo
        self.end_session_enabled = end_session
        self.revocation_enabled = revocation
        self.codes: dict[str, dict[str, Any]] = {}
        self.revoked: list[tuple[str, str | None]] = []
        self.discovery_status = 200
        self.revoke_status = 200
        self.token_delay = 0.0
        self.token_calls = 0
        self.token_completed = 0
        self.id_token_overrides: dict[str, Any] = {}
        # Canned responses replacing the normal discovery / token answers
        self.discovery_response: Response | None = None
        self.token_response: Response | None = None
        self.app = self._build_app()

    def issue_code(self, nonce: str | None, sub: str = "42") -> str:
        code = secrets.token_urlsafe(16)
        self.codes[code] = {"nonce": nonce, "sub": sub}
        return code

    def id_token(self, sub: str, nonce: str | None, **overrides: Any) -> str:
        now = int(time.time())
        payload = {"iss": ISSUER, "sub": sub, "aud": CLIENT_ID, "iat": now, "exp": now + 300}
        if nonce:
            payload["nonce"] = nonce
        payload.update(overrides)
        return jwt.encode(payload, SIGNING_KEY, algorithm="RS256", headers={"kid": KID})

    def _client_authenticated(self, authorization: str | None) -> bool:
        expected = base64.b64encode(f"{CLIENT_ID}:{CLIENT_SECRET}".encode()).decode()
        return authorization == f"Basic {expected}"

    def _build_app(self) -> FastAPI:
        app = FastAPI()
        issuer = self

        @app.get("/.well-known/openid-configuration")
        def openid_configuration():
            if issuer.discovery_response is not None:
                return issuer.discovery_response
            if issuer.discovery_status != 200:
                return JSONResponse({"error": "unavailable"}, status_code=issuer.discovery_status)
            doc = {
                "issuer": ISSUER,
                "authorization_endpoint": f"{ISSUER}/authorize",
                "token_endpoint": f"{ISSUER}/token",
                "jwks_uri": f"{ISSUER}/.well-known/jwks.json",
                "id_token_signing_alg_values_supported": ["RS256"],
            }
            if issuer.userinfo_enabled:
                doc["userinfo_endpoint"] = f"{ISSUER}/userinfo"
            if issuer.revocation_enabled:
                doc["revocation_endpoint"] = f"{ISSUER}/revoke"
            if issuer.end_session_enabled:
                doc["end_session_endpoint"] = f"{ISSUER}/logout"
            return doc

        @app.get("/.well-known/jwks.json")
        def jwks_json():
            return {"keys": [public_jwk(SIGNING_KEY.public_key(), KID)]}

        @app.post("/token")
        async def token(request: Request, grant_type: str = Form(...), code: str = Form(...), redirect_uri: str = Form(...)):
            issuer.token_calls += 1
            if issuer.token_delay:
                await asyncio.sleep(issuer.token_delay)
            issuer.token_completed += 1
            if issuer.token_response is not None:
                return issuer.token_response
            if not issuer._client_authenticated(request.headers.get("authorization")):
                return JSONResponse({"error": "invalid_client"}, status_code=401)
            grant = issuer.codes.pop(code, None)
            if grant_type != "authorization_code" or grant is None:
                return JSONResponse(
                    {"error": "invalid_grant", "error_description": "Invalid or expired authorization code"},
                    status_code=400,
                )
            return {
                "access_token": f"at-{secrets.token_urlsafe(8)}",
                "refresh_token": f"rt-{secrets.token_urlsafe(8)}",
                "token_type": "Bearer",
                "expires_in": 600,
                "scope": "openid profile",
                "id_token": issuer.id_token(grant["sub"], grant["nonce"], **issuer.id_token_overrides),
            }

        @app.get("/userinfo")
        def userinfo(request: Request):
            if not (request.headers.get("authorization") or "").startswith("Bearer at-"):
                return JSONResponse({"error": "invalid_token"}, status_code=401)
            return {"sub": "42", "name": "Test User", "preferred_username": "testuser"}

        @app.post("/revoke")
        def revoke(request: Request, token: str = Form(...), token_type_hint: str | None = Form(None)):
            if issuer.revoke_status != 200:
                return JSONResponse({"error": "server_error"}, status_code=issuer.revoke_status)
            issuer.revoked.append((token, token_type_hint))
            return {}

        return app


class DictSession:
    """SessionStore over a plain dict, for unit tests without a request."""

    def __init__(self, data: dict | None = None):
        self.data = data if data is not None else {}

    def get(self, key, default=None):
        return self.data.get(key, default)

    def set(self, key, value):
        self.data[key] = value

    def delete(self, key):
        self.data.pop(key, None)


@pytest.fixture
def issuer():
    return FakeIssuer()


@pytest.fixture
def http_client(issuer):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=issuer.app))


@pytest.fixture
def session_store():
    return DictSession()


@pytest.fixture
def make_app(http_client):
    """
    Build a host app: SessionMiddleware, the OIDC router, a home page (also the
    logout callback), a protected page and session inspection helpers.
    Returns (app, oidc, errors) where errors collects 'error' events.
    """

    def _make(**options):
        oidc = OIDCMiddleware(http_client=http_client, **{**BASE_OPTIONS, **options})
        errors = []
        oidc.on("error", errors.append)

        app = FastAPI(lifespan=oidc.lifespan)
        app.add_middleware(SessionMiddleware, secret_key="this-should-be-very-random")
        app.include_router(oidc.router)

        @app.get("/")
        def home(user=Depends(oidc.user_context), _logout=Depends(oidc.logout_callback())):
            return {"authenticated": user is not None, "userinfo": user.userinfo if user else None}

        @app.get("/protected")
        def protected(user=Depends(oidc.ensure_authenticated())):
            return {"access_token": user.tokens.access_token}

        @app.get("/test/session")
        def read_session(request: Request):
            return dict(request.session)

        @app.post("/test/session")
        async def write_session(request: Request):
            request.session.update(await request.json())
            return "OK"

        return app, oidc, errors

    return _make


def location_query(response) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(response.headers["location"]).query).items()}


@pytest.fixture
def login_flow(issuer):
    """
    Drive a login through the client: GET login, let the fake issuer mint a code
    for the nonce it was given, then hit the callback. Returns the callback response.
    """

    def _login(client, login_path="/login", callback_path="/authorization-code/callback", sub="42"):
        r = client.get(login_path, follow_redirects=False)
        assert r.status_code == 302
        params = location_query(r)
        code = issuer.issue_code(params.get("nonce"), sub=sub)
        return client.get(callback_path, params={"state": params["state"], "code": code}, follow_redirects=False)

    return SimpleNamespace(login=_login, location_query=location_query)
