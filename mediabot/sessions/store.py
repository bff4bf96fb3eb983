"""Session store — keyed per-user conversation state with idle eviction.

Contract:
- get() is total: an absent or idle-expired session comes back as a fresh IDLE one
- set() merges fields into the stored session (last write wins)
- reset() returns the session to IDLE and clears its flow context
- Callers get copies; only set()/reset() change stored state
- Sessions idle longer than idle_ttl_seconds are dropped by cleanup_expired()
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from typing import Any

from mediabot.sessions.models import CONTEXT_FIELDS, ConversationState, Session

logger = logging.getLogger(__name__)

_DEFAULT_IDLE_TTL_SECONDS = 1800  # 30 minutes

_SETTABLE_FIELDS = {"state", *CONTEXT_FIELDS}


class SessionStore:
    """In-memory session map guarded by a lock.

    One process, one writer per user at a time (the event router serializes
    each user's messages), so the lock only protects the map itself.
    """

    def __init__(self, idle_ttl_seconds: int = _DEFAULT_IDLE_TTL_SECONDS):
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()
        self._idle_ttl = idle_ttl_seconds

    def get(self, user_id: str) -> Session:
        """Return the user's session, creating an IDLE one if needed."""
        now = time.time()
        with self._lock:
            session = self._sessions.get(user_id)
            if session is not None and self._is_expired(session, now):
                logger.info(
                    "Session expired for user %s (state=%s)", user_id, session.state.value
                )
                session = None
            if session is None:
                session = Session(user_id=user_id, created_at=now, last_activity=now)
                self._sessions[user_id] = session
            else:
                session.last_activity = now
            return dataclasses.replace(session)

    def set(self, user_id: str, **fields: Any) -> Session:
        """Merge ``fields`` into the user's session."""
        unknown = set(fields) - _SETTABLE_FIELDS
        if unknown:
            raise ValueError(f"unknown session fields: {sorted(unknown)}")
        now = time.time()
        with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                session = Session(user_id=user_id, created_at=now)
                self._sessions[user_id] = session
            for name, value in fields.items():
                setattr(session, name, value)
            session.last_activity = now
            return dataclasses.replace(session)

    def reset(self, user_id: str) -> Session:
        """Back to IDLE with no flow context."""
        cleared: dict[str, Any] = {name: None for name in CONTEXT_FIELDS}
        return self.set(user_id, state=ConversationState.IDLE, **cleared)

    def cleanup_expired(self) -> int:
        """Remove idle sessions. Returns count of removed sessions."""
        now = time.time()
        with self._lock:
            expired = [uid for uid, s in self._sessions.items() if self._is_expired(s, now)]
            for uid in expired:
                del self._sessions[uid]
        if expired:
            logger.info("Evicted %d idle sessions", len(expired))
        return len(expired)

    @property
    def active_count(self) -> int:
        now = time.time()
        with self._lock:
            return sum(1 for s in self._sessions.values() if not self._is_expired(s, now))

    def _is_expired(self, session: Session, now: float) -> bool:
        return self._idle_ttl > 0 and now - session.last_activity > self._idle_ttl
