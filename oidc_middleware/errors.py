"""
Error types raised by the OIDC middleware.
Request-scoped errors carry the HTTP status the error stage answers with.
"""


class OIDCMiddlewareError(Exception):
    """Base class. `name` is what the error stage prints before the message."""

    name = "OIDCMiddlewareError"
    status_code = 401

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(OIDCMiddlewareError):
    name = "ConfigurationError"
    status_code = 500


class MiddlewareConfigurationError(ConfigurationError):
    """A custom login callback handler is not usable."""

    name = "MiddlewareConfigurationError"


class AuthenticationError(OIDCMiddlewareError):
    name = "AuthenticationError"


class OPError(AuthenticationError):
    """Error answered by the authorization server (callback `error` param or token endpoint)."""

    name = "OPError"

    def __init__(self, error: str, error_description: str | None = None):
        super().__init__(f"{error} ({error_description})" if error_description else error)
        self.error = error
        self.error_description = error_description


class OIDCTimeoutError(OIDCMiddlewareError, TimeoutError):
    name = "TimeoutError"

    def __init__(self, operation: str, timeout_ms: int):
        super().__init__(f"Timeout awaiting '{operation}' for {timeout_ms}ms")
        self.operation = operation
        self.timeout_ms = timeout_ms


class RevocationError(OIDCMiddlewareError):
    name = "RevocationError"

    def __init__(self, message: str, token_type_hint: str | None = None):
        super().__init__(message)
        self.token_type_hint = token_type_hint


class DiscoveryError(OIDCMiddlewareError):
    name = "DiscoveryError"
    status_code = 503


class CSRFError(OIDCMiddlewareError):
    name = "CSRFError"
    status_code = 403
