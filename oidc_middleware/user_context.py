"""
Token set and user context kept in the session after a successful login.
Stored as plain dicts so any JSON session backend can hold them.
"""
import time
from dataclasses import dataclass, field
from typing import Any

from oidc_middleware.session import RETURN_TO_KEY, USER_CONTEXT_KEY, SessionStore

_TOKEN_FIELDS = ("access_token", "id_token", "refresh_token", "token_type", "scope", "expires_at")


@dataclass
class TokenSet:
    access_token: str | None = None
    id_token: str | None = None
    refresh_token: str | None = None
    token_type: str | None = None
    scope: str | None = None
    expires_at: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "TokenSet":
        """Build from a token endpoint response; expires_in becomes an absolute expires_at."""
        values = {k: data.get(k) for k in _TOKEN_FIELDS}
        expires_in = data.get("expires_in")
        if values["expires_at"] is None and expires_in is not None:
            values["expires_at"] = int(time.time()) + int(expires_in)
        extra = {k: v for k, v in data.items() if k not in _TOKEN_FIELDS and k != "expires_in"}
        return cls(**values, extra=extra)

    def to_dict(self) -> dict[str, Any]:
        data = {k: getattr(self, k) for k in _TOKEN_FIELDS if getattr(self, k) is not None}
        data.update(self.extra)
        return data


@dataclass
class UserContext:
    tokens: TokenSet
    userinfo: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"tokens": self.tokens.to_dict()}
        if self.userinfo is not None:
            data["userinfo"] = self.userinfo
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UserContext":
        return cls(tokens=TokenSet.from_response(data.get("tokens") or {}), userinfo=data.get("userinfo"))


def store_user_context(session: SessionStore, context: UserContext) -> None:
    session.set(USER_CONTEXT_KEY, context.to_dict())


def get_user_context(session: SessionStore) -> UserContext | None:
    data = session.get(USER_CONTEXT_KEY)
    if not isinstance(data, dict):
        return None
    return UserContext.from_dict(data)


def clear_user_context(session: SessionStore) -> None:
    """Local teardown on logout: user context and any pending return path."""
    session.delete(USER_CONTEXT_KEY)
    session.delete(RETURN_TO_KEY)
