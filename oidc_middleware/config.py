"""
Middleware configuration. Built and validated once; immutable afterwards.
Default routes: /login, /authorization-code/callback, /logout and / for the logout callback.
"""
import os
from dataclasses import dataclass, field, fields
from typing import Any, Awaitable, Callable, Mapping, Sequence
from urllib.parse import urlparse

from fastapi import Request
from fastapi.responses import Response

from oidc_middleware.errors import ConfigurationError, MiddlewareConfigurationError

DEFAULT_SCOPE = ("openid",)
DEFAULT_RESPONSE_TYPE = "code"
# Seconds of leeway for exp/iat/nbf when validating ID tokens
DEFAULT_MAX_CLOCK_SKEW = 120
# Milliseconds; bound for every call to the issuer
DEFAULT_TIMEOUT_MS = 10000

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class SimpleCallbackHandler:
    """Post-authentication hook called as fn(request, proceed). Errors bypass it."""

    fn: Callable[..., Awaitable[Response | None] | Response | None]
    kind: str = field(default="simple", init=False)


@dataclass(frozen=True)
class ErrorAwareCallbackHandler:
    """Post-authentication hook called as fn(error, request, proceed); error is None on success."""

    fn: Callable[..., Awaitable[Response | None] | Response | None]
    kind: str = field(default="errorAware", init=False)


CallbackHandler = SimpleCallbackHandler | ErrorAwareCallbackHandler
LoginViewHandler = Callable[[Request, str], Awaitable[Response] | Response]


@dataclass(frozen=True)
class LoginRoute:
    path: str = "/login"
    view_handler: LoginViewHandler | None = None


@dataclass(frozen=True)
class LoginCallbackRoute:
    path: str = "/authorization-code/callback"
    after_callback: str | None = None
    failure_redirect: str | None = None
    handler: CallbackHandler | None = None


@dataclass(frozen=True)
class LogoutRoute:
    path: str = "/logout"


@dataclass(frozen=True)
class LogoutCallbackRoute:
    path: str = "/"
    after_callback: str = "/"


@dataclass(frozen=True)
class RoutesConfig:
    login: LoginRoute = field(default_factory=LoginRoute)
    login_callback: LoginCallbackRoute = field(default_factory=LoginCallbackRoute)
    logout: LogoutRoute = field(default_factory=LogoutRoute)
    logout_callback: LogoutCallbackRoute = field(default_factory=LogoutCallbackRoute)

    @classmethod
    def build(cls, routes: "RoutesConfig | Mapping[str, Any] | None") -> "RoutesConfig":
        """Accept a RoutesConfig or a nested dict like {"login": {"path": "/signin"}}."""
        if routes is None:
            return cls()
        if isinstance(routes, RoutesConfig):
            _check_handler(routes.login_callback.handler)
            return routes
        built = {}
        for name, options in routes.items():
            route_cls = _ROUTE_TYPES.get(name)
            if route_cls is None:
                raise ConfigurationError(f"Unknown route '{name}'")
            if isinstance(options, route_cls):
                built[name] = options
                continue
            allowed = {f.name for f in fields(route_cls)}
            unknown = set(options or {}) - allowed
            if unknown:
                raise ConfigurationError(f"Unknown option(s) for route '{name}': {', '.join(sorted(unknown))}")
            built[name] = route_cls(**(options or {}))
        config = cls(**built)
        for route in (config.login, config.login_callback, config.logout, config.logout_callback):
            if not route.path.startswith("/"):
                raise ConfigurationError(f"Route path must start with '/': {route.path!r}")
        _check_handler(config.login_callback.handler)
        return config


_ROUTE_TYPES = {
    "login": LoginRoute,
    "login_callback": LoginCallbackRoute,
    "logout": LogoutRoute,
    "logout_callback": LogoutCallbackRoute,
}


def _check_handler(handler: Any) -> None:
    """Handlers are tagged variants; anything else is rejected before a request reaches it."""
    if handler is None:
        return
    if not isinstance(handler, (SimpleCallbackHandler, ErrorAwareCallbackHandler)):
        raise MiddlewareConfigurationError(
            "Your custom callback handler must be a SimpleCallbackHandler or ErrorAwareCallbackHandler"
        )
    if not callable(handler.fn):
        raise MiddlewareConfigurationError("Your custom callback handler must wrap a callable")


def _parse_scope(scope: str | Sequence[str] | None) -> tuple[str, ...]:
    if scope is None:
        return DEFAULT_SCOPE
    if isinstance(scope, str):
        parts = tuple(scope.split())
    else:
        parts = tuple(str(s) for s in scope)
    if not parts:
        raise ConfigurationError("scope must not be empty")
    return parts


@dataclass(frozen=True)
class OIDCConfig:
    issuer: str
    client_id: str
    client_secret: str
    app_base_url: str
    scope: tuple[str, ...] = DEFAULT_SCOPE
    response_type: str = DEFAULT_RESPONSE_TYPE
    max_clock_skew: int = DEFAULT_MAX_CLOCK_SKEW
    timeout: int = DEFAULT_TIMEOUT_MS
    session_key: str = ""
    login_redirect_uri: str = ""
    logout_redirect_uri: str = ""
    routes: RoutesConfig = field(default_factory=RoutesConfig)
    testing_disable_https_check: bool = False

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000

    @property
    def requests_profile_scope(self) -> bool:
        """True when anything beyond openid was requested (userinfo is worth fetching)."""
        return any(s != "openid" for s in self.scope)

    @classmethod
    def build(cls, **options: Any) -> "OIDCConfig":
        """
        Validate options and fill derived defaults (session_key, redirect URIs).
        Raises ConfigurationError for missing or invalid values and for unknown option names.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(options) - known
        if unknown:
            raise ConfigurationError(f"Unknown configuration option(s): {', '.join(sorted(unknown))}")

        missing = [name for name in ("issuer", "client_id", "client_secret", "app_base_url") if not options.get(name)]
        if missing:
            raise ConfigurationError(f"Your {missing[0]} is missing")

        testing = bool(options.get("testing_disable_https_check", False))
        issuer = _validate_issuer(str(options["issuer"]), testing)
        app_base_url = _validate_app_base_url(str(options["app_base_url"]))

        timeout = options.get("timeout", DEFAULT_TIMEOUT_MS)
        max_clock_skew = options.get("max_clock_skew", DEFAULT_MAX_CLOCK_SKEW)
        for name, value in (("timeout", timeout), ("max_clock_skew", max_clock_skew)):
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ConfigurationError(f"{name} must be a non-negative integer")

        routes = RoutesConfig.build(options.get("routes"))
        return cls(
            issuer=issuer,
            client_id=str(options["client_id"]),
            client_secret=str(options["client_secret"]),
            app_base_url=app_base_url,
            scope=_parse_scope(options.get("scope")),
            response_type=options.get("response_type") or DEFAULT_RESPONSE_TYPE,
            max_clock_skew=max_clock_skew,
            timeout=timeout,
            session_key=options.get("session_key") or f"oidc:{issuer}",
            login_redirect_uri=options.get("login_redirect_uri") or f"{app_base_url}{routes.login_callback.path}",
            logout_redirect_uri=options.get("logout_redirect_uri") or f"{app_base_url}{routes.logout_callback.path}",
            routes=routes,
            testing_disable_https_check=testing,
        )

    @classmethod
    def from_env(cls, **overrides: Any) -> "OIDCConfig":
        """Build from OIDC_* environment variables; keyword overrides win."""
        env = {
            "issuer": os.environ.get("OIDC_ISSUER"),
            "client_id": os.environ.get("OIDC_CLIENT_ID"),
            "client_secret": os.environ.get("OIDC_CLIENT_SECRET"),
            "app_base_url": os.environ.get("OIDC_APP_BASE_URL"),
            "scope": os.environ.get("OIDC_SCOPE"),
            "testing_disable_https_check": os.environ.get("OIDC_TESTING_DISABLE_HTTPS_CHECK", "").lower() in _TRUTHY,
        }
        timeout = os.environ.get("OIDC_TIMEOUT_MS")
        if timeout:
            try:
                env["timeout"] = int(timeout)
            except ValueError:
                raise ConfigurationError("OIDC_TIMEOUT_MS must be an integer")
        options = {k: v for k, v in env.items() if v is not None}
        options.update(overrides)
        return cls.build(**options)


def _validate_issuer(issuer: str, testing_disable_https_check: bool) -> str:
    issuer = issuer.rstrip("/")
    if "{yourOktaDomain}" in issuer:
        raise ConfigurationError("Replace {yourOktaDomain} with your issuer domain")
    parsed = urlparse(issuer)
    if not parsed.scheme or not parsed.netloc:
        raise ConfigurationError(f"Your issuer must be an absolute URL, got {issuer!r}")
    if parsed.scheme != "https" and not testing_disable_https_check:
        raise ConfigurationError(
            "Your issuer must be https. "
            "Set testing_disable_https_check (OIDC_TESTING_DISABLE_HTTPS_CHECK) only for local testing."
        )
    return issuer


def _validate_app_base_url(app_base_url: str) -> str:
    parsed = urlparse(app_base_url)
    if not parsed.scheme or not parsed.netloc:
        raise ConfigurationError(f"Your app_base_url must be an absolute URL, got {app_base_url!r}")
    if app_base_url.endswith("/"):
        raise ConfigurationError("Your app_base_url must not end in a '/'")
    return app_base_url
