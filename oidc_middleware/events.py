"""
Event channel for failures that have no request to answer: bootstrap, token revocation,
logout state mismatch. Also carries the one-time 'ready' event.

Register an 'error' listener. Without one, errors are only logged.
"""
import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

READY = "ready"
ERROR = "error"
EVENTS = (READY, ERROR)

Listener = Callable[..., Any]


class EventChannel:
    def __init__(self):
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> "EventChannel":
        if event not in EVENTS:
            raise ValueError(f"Unknown event {event!r}; expected one of {', '.join(EVENTS)}")
        self._listeners[event].append(listener)
        return self

    def off(self, event: str, listener: Listener) -> None:
        try:
            self._listeners[event].remove(listener)
        except ValueError:
            pass

    def listener_count(self, event: str) -> int:
        return len(self._listeners[event])

    def emit(self, event: str, *args: Any) -> None:
        listeners = list(self._listeners[event])
        if event == ERROR and not listeners:
            err = args[0] if args else None
            logger.error(
                "Unhandled OIDC middleware error (no 'error' listener registered): %s",
                err,
                exc_info=err if isinstance(err, BaseException) else None,
            )
            return
        for listener in listeners:
            try:
                listener(*args)
            except Exception:
                logger.exception("Listener for %r event raised", event)
