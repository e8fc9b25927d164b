"""Tests for the event channel."""
import logging

import pytest

from oidc_middleware.errors import RevocationError
from oidc_middleware.events import EventChannel


def test_listeners_receive_emitted_errors():
    channel = EventChannel()
    seen = []
    channel.on("error", seen.append)
    err = RevocationError("boom", "access_token")
    channel.emit("error", err)
    assert seen == [err]


def test_unknown_event_rejected():
    with pytest.raises(ValueError):
        EventChannel().on("login", print)


def test_failing_listener_does_not_stop_others(caplog):
    channel = EventChannel()
    seen = []

    def bad(*args):
        raise RuntimeError("listener bug")

    channel.on("ready", bad)
    channel.on("ready", lambda: seen.append("ready"))
    with caplog.at_level(logging.ERROR, logger="oidc_middleware.events"):
        channel.emit("ready")
    assert seen == ["ready"]
    assert "Listener for 'ready' event raised" in caplog.text


def test_error_without_listener_is_logged(caplog):
    channel = EventChannel()
    with caplog.at_level(logging.ERROR, logger="oidc_middleware.events"):
        channel.emit("error", RevocationError("revocation failed"))
    assert "no 'error' listener registered" in caplog.text
    assert "revocation failed" in caplog.text


def test_off_removes_listener():
    channel = EventChannel()
    seen = []
    channel.on("ready", seen.append)
    assert channel.listener_count("ready") == 1
    channel.off("ready", seen.append)
    channel.off("ready", seen.append)
    assert channel.listener_count("ready") == 0
