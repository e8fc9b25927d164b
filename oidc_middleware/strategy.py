"""
Authentication strategy for the login callback: correlate state, exchange the code,
validate the ID token against the stored nonce, optionally fetch userinfo.
Failures are returned to the route as a StrategyResult, not raised at it.
"""
import asyncio
import hmac
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Mapping, TypeVar

from oidc_middleware.config import OIDCConfig
from oidc_middleware.errors import AuthenticationError, OIDCMiddlewareError, OIDCTimeoutError, OPError
from oidc_middleware.flow_store import get_flow
from oidc_middleware.session import SessionStore
from oidc_middleware.user_context import UserContext

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LoginState(str, Enum):
    INITIATED = "initiated"
    CALLBACK_RECEIVED = "callback_received"
    TOKEN_EXCHANGED = "token_exchanged"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class StrategyResult:
    user: UserContext | None = None
    error: OIDCMiddlewareError | None = None
    state: LoginState = LoginState.INITIATED

    @property
    def ok(self) -> bool:
        return self.user is not None and self.error is None


async def bounded(operation: str, awaitable: Awaitable[T], timeout_ms: int) -> T:
    """
    Await with the configured bound. On expiry the pending call is cancelled
    (asyncio.wait_for) so it can never resume after a response was produced.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000)
    except OIDCTimeoutError:
        # Raised by the call itself (e.g. an httpx timeout); already names its operation
        raise
    except asyncio.TimeoutError as e:
        raise OIDCTimeoutError(operation, timeout_ms) from e


class OIDCStrategy:
    def __init__(self, config: OIDCConfig, client: Any):
        self._config = config
        self._client = client

    def _userinfo_wanted(self) -> bool:
        """Userinfo only when the issuer has the endpoint and more than openid was requested."""
        metadata = getattr(self._client, "metadata", None)
        endpoint = getattr(metadata, "userinfo_endpoint", None)
        return bool(endpoint) and self._config.requests_profile_scope

    async def authenticate(self, params: Mapping[str, str], session: SessionStore) -> StrategyResult:
        result = StrategyResult()
        try:
            result.user = await self._run(params, session, result)
        except OIDCMiddlewareError as e:
            logger.warning("Login callback rejected in state %s: %s", result.state.value, e)
            result.state = LoginState.FAILED
            result.error = e
            return result
        result.state = LoginState.COMPLETE
        logger.debug("Login attempt %s", result.state.value)
        return result

    async def _run(self, params: Mapping[str, str], session: SessionStore, result: StrategyResult) -> UserContext:
        timeout = self._config.timeout
        # The record is consumed whatever the outcome: one callback per attempt
        record = get_flow(session, self._config.session_key)
        received = params.get("state")
        if record is None:
            raise AuthenticationError(
                f'state mismatch, no login attempt in session under "{self._config.session_key}"'
            )
        if not received or not hmac.compare_digest(record.state.encode(), received.encode()):
            raise AuthenticationError(f"state mismatch, expected {record.state}, got: {received}")
        result.state = LoginState.CALLBACK_RECEIVED
        logger.debug("Login attempt %s", result.state.value)

        if params.get("error"):
            raise OPError(params["error"], params.get("error_description"))
        code = params.get("code")
        if not code:
            raise AuthenticationError("authorization code missing from callback")

        token_set = await bounded("token", self._client.callback(self._config.login_redirect_uri, code), timeout)
        result.state = LoginState.TOKEN_EXCHANGED
        logger.debug("Login attempt %s", result.state.value)

        claims = await bounded("jwks", self._client.validate_id_token(token_set, record.nonce, None), timeout)

        userinfo = None
        if self._userinfo_wanted():
            userinfo = await bounded("userinfo", self._client.userinfo(token_set.access_token), timeout)
        logger.info("Login complete for sub=%s", (claims or {}).get("sub"))
        return UserContext(tokens=token_set, userinfo=userinfo)
