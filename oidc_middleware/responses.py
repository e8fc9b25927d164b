"""
Terminal error stage: turns middleware errors into HTTP responses instead of 500s.
The error is logged with its traceback; timeouts are also emitted on the event channel.
"""
import logging
from typing import Any

from fastapi import Request
from fastapi.responses import PlainTextResponse

from oidc_middleware.errors import OIDCMiddlewareError, OIDCTimeoutError
from oidc_middleware.events import ERROR

logger = logging.getLogger(__name__)


def error_response(context: Any, request: Request, err: OIDCMiddlewareError) -> PlainTextResponse:
    """401 for authentication failures (403 CSRF, 503 bootstrap), body '<Name>: <message>'."""
    logger.warning("%s %s failed: %s: %s", request.method, request.url.path, err.name, err, exc_info=err)
    if isinstance(err, OIDCTimeoutError):
        context.events.emit(ERROR, err)
    return PlainTextResponse(f"{err.name}: {err.message}", status_code=err.status_code)
