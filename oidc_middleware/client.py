"""
OIDC client used by the middleware: discovery, authorization URL, code exchange,
ID token validation (JWKS via PyJWT), userinfo, revocation, end-session URL.
All network calls go through one httpx.AsyncClient, which can be injected.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

import httpx
import jwt

from oidc_middleware.config import OIDCConfig
from oidc_middleware.errors import (
    AuthenticationError,
    DiscoveryError,
    OIDCTimeoutError,
    OPError,
    RevocationError,
)
from oidc_middleware.redirects import append_query
from oidc_middleware.user_context import TokenSet

logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = "/.well-known/openid-configuration"


@dataclass(frozen=True)
class IssuerMetadata:
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str | None = None
    userinfo_endpoint: str | None = None
    revocation_endpoint: str | None = None
    end_session_endpoint: str | None = None
    id_token_signing_alg_values_supported: tuple[str, ...] = ("RS256",)
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    @classmethod
    def from_document(cls, doc: dict[str, Any]) -> "IssuerMetadata":
        for required in ("issuer", "authorization_endpoint", "token_endpoint"):
            if not doc.get(required):
                raise DiscoveryError(f"Discovery document is missing {required}")
        algs = doc.get("id_token_signing_alg_values_supported") or ["RS256"]
        return cls(
            issuer=doc["issuer"],
            authorization_endpoint=doc["authorization_endpoint"],
            token_endpoint=doc["token_endpoint"],
            jwks_uri=doc.get("jwks_uri"),
            userinfo_endpoint=doc.get("userinfo_endpoint"),
            revocation_endpoint=doc.get("revocation_endpoint"),
            end_session_endpoint=doc.get("end_session_endpoint"),
            id_token_signing_alg_values_supported=tuple(algs),
            raw=doc,
        )


def _json_object(r: httpx.Response) -> dict[str, Any] | None:
    """Response body as a JSON object, or None when it is not one."""
    try:
        body = r.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def _error_from_response(r: httpx.Response, default: str) -> OPError:
    """Map an OAuth error body ({"error", "error_description"}) to OPError."""
    body = _json_object(r) or {}
    detail = body.get("detail") if isinstance(body.get("detail"), dict) else body
    return OPError(
        detail.get("error") or default,
        detail.get("error_description") or f"HTTP {r.status_code}",
    )


class OIDCClient:
    def __init__(self, config: OIDCConfig, http_client: httpx.AsyncClient | None = None):
        self._config = config
        self._owns_http_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=config.timeout_seconds)
        self._metadata: IssuerMetadata | None = None
        self._jwks: jwt.PyJWKSet | None = None

    @property
    def metadata(self) -> IssuerMetadata:
        if self._metadata is None:
            raise DiscoveryError("Issuer metadata not loaded; await discover() first")
        return self._metadata

    async def _send(self, operation: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._http.request(method, url, timeout=self._config.timeout_seconds, **kwargs)
        except httpx.TimeoutException:
            raise OIDCTimeoutError(operation, self._config.timeout)

    async def discover(self) -> IssuerMetadata:
        """Fetch and check the discovery document of the configured issuer."""
        url = f"{self._config.issuer}{WELL_KNOWN_PATH}"
        try:
            r = await self._send("discovery", "GET", url, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            raise DiscoveryError(f"Could not reach {url}: {e}")
        if r.status_code != 200:
            raise DiscoveryError(f"Discovery failed: {url} returned HTTP {r.status_code}")
        doc = _json_object(r)
        if doc is None:
            raise DiscoveryError(f"Discovery document at {url} is not a JSON object")
        metadata = IssuerMetadata.from_document(doc)
        if metadata.issuer.rstrip("/") != self._config.issuer:
            raise DiscoveryError(f"Discovery issuer mismatch: expected {self._config.issuer}, got {metadata.issuer}")
        self._metadata = metadata
        logger.info("Discovered issuer %s", metadata.issuer)
        return metadata

    def authorization_url(self, params: dict[str, Any]) -> str:
        return f"{self.metadata.authorization_endpoint}?{urlencode(params)}"

    def end_session_url(self, params: dict[str, Any]) -> str | None:
        """RP-initiated logout URL, or None when the issuer has no end_session_endpoint."""
        endpoint = self.metadata.end_session_endpoint
        if not endpoint:
            return None
        return append_query(endpoint, params)

    async def callback(self, redirect_uri: str, code: str) -> TokenSet:
        """Exchange an authorization code at the token endpoint (client_secret_basic)."""
        try:
            r = await self._send(
                "token",
                "POST",
                self.metadata.token_endpoint,
                data={"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri},
                auth=(self._config.client_id, self._config.client_secret),
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise OPError("server_error", f"Token request failed: {e}")
        if r.status_code != 200:
            raise _error_from_response(r, "invalid_grant")
        body = _json_object(r)
        if body is None:
            raise OPError("invalid_response", "Token endpoint did not answer a JSON object")
        try:
            return TokenSet.from_response(body)
        except (TypeError, ValueError) as e:
            raise OPError("invalid_response", f"Malformed token response: {e}") from e

    async def _load_jwks(self, refresh: bool = False) -> jwt.PyJWKSet:
        if self._jwks is not None and not refresh:
            return self._jwks
        jwks_uri = self.metadata.jwks_uri
        if not jwks_uri:
            raise AuthenticationError("Issuer does not publish a jwks_uri")
        r = await self._send("jwks", "GET", jwks_uri, headers={"Accept": "application/json"})
        if r.status_code != 200:
            raise AuthenticationError(f"Could not fetch JWKS: HTTP {r.status_code}")
        try:
            self._jwks = jwt.PyJWKSet.from_dict(_json_object(r) or {})
        except (ValueError, jwt.PyJWKSetError) as e:
            raise AuthenticationError(f"Invalid JWKS: {e}")
        return self._jwks

    async def _signing_key(self, kid: str | None) -> jwt.PyJWK:
        jwks = await self._load_jwks()
        for refreshed in (False, True):
            if refreshed:
                # Unknown kid: the issuer may have rotated keys
                jwks = await self._load_jwks(refresh=True)
            keys = [k for k in jwks.keys if kid is None or k.key_id == kid]
            if keys:
                return keys[0]
        raise AuthenticationError(f"No signing key found for kid {kid!r}")

    async def validate_id_token(self, token_set: TokenSet, nonce: str | None, max_age: int | None = None) -> dict:
        """
        Verify the ID token signature, iss, aud and exp (with max_clock_skew leeway),
        then the nonce bound to this login attempt. Returns the claims.
        """
        id_token = token_set.id_token
        if not id_token:
            raise AuthenticationError("id_token not present in TokenSet")
        try:
            header = jwt.get_unverified_header(id_token)
        except jwt.InvalidTokenError as e:
            raise AuthenticationError(f"Malformed id_token: {e}")
        signing_key = await self._signing_key(header.get("kid"))
        try:
            claims = jwt.decode(
                id_token,
                signing_key.key,
                algorithms=list(self.metadata.id_token_signing_alg_values_supported),
                audience=self._config.client_id,
                issuer=self.metadata.issuer,
                leeway=self._config.max_clock_skew,
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.InvalidTokenError as e:
            raise AuthenticationError(f"id_token validation failed: {e}")
        if nonce is not None and claims.get("nonce") != nonce:
            raise AuthenticationError(f"nonce mismatch, expected {nonce}, got: {claims.get('nonce')}")
        if max_age is not None:
            auth_time = claims.get("auth_time")
            if auth_time is None:
                raise AuthenticationError("missing required JWT property auth_time")
            if int(auth_time) + max_age + self._config.max_clock_skew < time.time():
                raise AuthenticationError("too much time has elapsed since the last End-User authentication")
        return claims

    async def userinfo(self, access_token: str) -> dict[str, Any]:
        endpoint = self.metadata.userinfo_endpoint
        if not endpoint:
            raise OPError("invalid_request", "Issuer has no userinfo_endpoint")
        try:
            r = await self._send(
                "userinfo",
                "GET",
                endpoint,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise OPError("server_error", f"Userinfo request failed: {e}")
        if r.status_code != 200:
            raise _error_from_response(r, "invalid_token")
        body = _json_object(r)
        if body is None:
            raise OPError("invalid_response", "Userinfo endpoint did not answer a JSON object")
        return body

    async def revoke(self, token: str, token_type_hint: str | None = None) -> None:
        """RFC 7009 revocation. Issuers without a revocation_endpoint are skipped."""
        endpoint = self.metadata.revocation_endpoint
        if not endpoint:
            logger.debug("Issuer has no revocation_endpoint; skipping %s revocation", token_type_hint or "token")
            return
        data = {"token": token}
        if token_type_hint:
            data["token_type_hint"] = token_type_hint
        try:
            r = await self._send(
                "revoke",
                "POST",
                endpoint,
                data=data,
                auth=(self._config.client_id, self._config.client_secret),
            )
        except httpx.HTTPError as e:
            raise RevocationError(f"Revocation request failed: {e}", token_type_hint)
        if r.status_code != 200:
            raise RevocationError(f"Revocation of {token_type_hint or 'token'} failed: HTTP {r.status_code}", token_type_hint)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http.aclose()
