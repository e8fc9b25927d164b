"""
OIDCMiddleware: entry point for host applications.

    oidc = OIDCMiddleware(issuer=..., client_id=..., client_secret=..., app_base_url=...)
    oidc.on("error", report_error)

    app = FastAPI(lifespan=oidc.lifespan)
    app.add_middleware(SessionMiddleware, secret_key=...)
    app.include_router(oidc.router)

    @app.get("/protected")
    def protected(user=Depends(oidc.ensure_authenticated())):
        ...

Discovery runs as a task; `await oidc.ready()` (or the lifespan) waits for it. Routes
wait too, so requests arriving early are held until the issuer metadata is known.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

import httpx
from fastapi import Request

from oidc_middleware import guards, logout
from oidc_middleware.client import IssuerMetadata, OIDCClient
from oidc_middleware.config import OIDCConfig
from oidc_middleware.csrf import CSRFProtect
from oidc_middleware.errors import DiscoveryError, OIDCMiddlewareError
from oidc_middleware.events import ERROR, READY, EventChannel, Listener
from oidc_middleware.routes import create_oidc_router
from oidc_middleware.session import RequestSession, SessionStore
from oidc_middleware.strategy import OIDCStrategy, bounded
from oidc_middleware.user_context import UserContext, get_user_context

logger = logging.getLogger(__name__)


class OIDCMiddleware:
    def __init__(
        self,
        config: OIDCConfig | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        client: Any = None,
        session_factory: Callable[[Request], SessionStore] = RequestSession,
        **options: Any,
    ):
        if config is None:
            config = OIDCConfig.build(**options)
        elif options:
            raise TypeError("Pass either an OIDCConfig or keyword options, not both")
        self.config = config
        self.events = EventChannel()
        self.client = client if client is not None else OIDCClient(config, http_client=http_client)
        self.session_factory = session_factory
        self.csrf = CSRFProtect()
        self.strategy = OIDCStrategy(config, self.client)
        self._bootstrap: asyncio.Task | None = None
        self.router = create_oidc_router(self)

    def on(self, event: str, listener: Listener) -> "OIDCMiddleware":
        self.events.on(event, listener)
        return self

    async def _run_bootstrap(self) -> IssuerMetadata:
        try:
            metadata = await bounded("discovery", self.client.discover(), self.config.timeout)
        except OIDCMiddlewareError as e:
            self.events.emit(ERROR, e)
            if isinstance(e, DiscoveryError):
                raise
            raise DiscoveryError(f"OIDC middleware failed to start: {e.name}: {e}") from e
        self.events.emit(READY)
        return metadata

    def start(self) -> asyncio.Task:
        """Schedule discovery once; must be called with a running event loop."""
        if self._bootstrap is None:
            self._bootstrap = asyncio.ensure_future(self._run_bootstrap())
        return self._bootstrap

    async def ready(self) -> IssuerMetadata:
        """Wait for bootstrap. Raises DiscoveryError if it failed."""
        return await asyncio.shield(self.start())

    @asynccontextmanager
    async def lifespan(self, app: Any) -> AsyncIterator[None]:
        """FastAPI lifespan: bootstrap on startup, release the HTTP client on shutdown."""
        try:
            await self.ready()
        except DiscoveryError as e:
            # Already on the event channel; routes answer 503 until restart
            logger.error("OIDC bootstrap failed: %s", e)
        try:
            yield
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._bootstrap is not None and not self._bootstrap.done():
            self._bootstrap.cancel()
        aclose = getattr(self.client, "aclose", None)
        if aclose is not None:
            await aclose()

    def ensure_authenticated(self, redirect_to: str | None = None, login_hint: str | None = None):
        return guards.ensure_authenticated(self, redirect_to=redirect_to, login_hint=login_hint)

    def force_logout_and_revoke(self):
        """Route handler for a custom logout path: revoke, tear down, end the issuer session."""
        return logout.force_logout_and_revoke(self)

    def logout_callback(self):
        """Dependency for the host route that receives the issuer's post-logout redirect."""
        return logout.logout_callback(self)

    async def user_context(self, request: Request) -> UserContext | None:
        """Dependency: the session's UserContext (also set on request.state), or None."""
        user = get_user_context(self.session_factory(request))
        request.state.user_context = user
        return user
