"""
Correlation record for the in-flight login (or logout) attempt of one session.
Stored under the configured session key; one attempt per session, last write wins.
"""
import logging
from dataclasses import asdict, dataclass

from oidc_middleware.session import SessionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CorrelationRecord:
    state: str
    nonce: str | None = None

    @classmethod
    def from_session(cls, value: object) -> "CorrelationRecord | None":
        if not isinstance(value, dict) or not value.get("state"):
            return None
        return cls(state=str(value["state"]), nonce=value.get("nonce"))


def store_flow(session: SessionStore, key: str, record: CorrelationRecord) -> None:
    """Overwrite any previous attempt for this session."""
    if session.get(key) is not None:
        logger.debug("Superseding in-flight attempt stored under %s", key)
    session.set(key, asdict(record))


def get_flow(session: SessionStore, key: str) -> CorrelationRecord | None:
    """Consume the record: a record is never usable twice."""
    value = session.get(key)
    session.delete(key)
    return CorrelationRecord.from_session(value)
