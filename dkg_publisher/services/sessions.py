from __future__ import annotations

from dataclasses import dataclass, field
from functools import lru_cache
import secrets
import time
from typing import Any, Callable

from dkg_publisher.core.config import get_settings


@dataclass(slots=True)
class ToolSession:
    id: str
    created_at: float
    last_seen_at: float
    attributes: dict[str, Any] = field(default_factory=dict)


class ToolSessionRegistry:
    """In-memory agent tool sessions with an idle TTL.

    Sessions are optional context for tool calls; nothing about a job depends on them.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._sessions: dict[str, ToolSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create(self, attributes: dict[str, Any] | None = None) -> ToolSession:
        self.sweep()
        now = self._clock()
        session = ToolSession(
            id=secrets.token_urlsafe(18),
            created_at=now,
            last_seen_at=now,
            attributes=dict(attributes or {}),
        )
        self._sessions[session.id] = session
        return session

    def lookup(self, session_id: str) -> ToolSession | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if self._is_expired(session):
            del self._sessions[session_id]
            return None
        return session

    def touch(self, session_id: str) -> ToolSession | None:
        session = self.lookup(session_id)
        if session is not None:
            session.last_seen_at = self._clock()
        return session

    def expire(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def sweep(self) -> int:
        expired = [session_id for session_id, session in self._sessions.items() if self._is_expired(session)]
        for session_id in expired:
            del self._sessions[session_id]
        return len(expired)

    def _is_expired(self, session: ToolSession) -> bool:
        if self.ttl_seconds <= 0:
            return False
        return self._clock() - session.last_seen_at >= self.ttl_seconds


@lru_cache
def get_session_registry() -> ToolSessionRegistry:
    return ToolSessionRegistry(ttl_seconds=get_settings().tool_session_ttl_seconds)
