"""Conversation session data models."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum

from mediabot.catalog.models import ContentKind, EpisodeRange


class ConversationState(str, Enum):
    """Where a user is in a purchase flow."""
    IDLE = "IDLE"
    WAITING_FOR_MOVIE_TITLE = "WAITING_FOR_MOVIE_TITLE"
    WAITING_FOR_SERIES_TITLE = "WAITING_FOR_SERIES_TITLE"
    WAITING_FOR_EPISODE_RANGE = "WAITING_FOR_EPISODE_RANGE"
    WAITING_FOR_PHONE = "WAITING_FOR_PHONE"


# Fields cleared whenever a session returns to IDLE through reset()
CONTEXT_FIELDS = (
    "series_id",
    "transaction_code",
    "content_id",
    "kind",
    "episode_range",
    "quote_code",
)


@dataclass
class Session:
    """Conversation state plus the context that state needs.

    - series_id: set while WAITING_FOR_EPISODE_RANGE
    - transaction_code / content_id / kind / episode_range: set while WAITING_FOR_PHONE
    - quote_code: pending transaction created when a series range was quoted
    """
    user_id: str
    state: ConversationState = ConversationState.IDLE
    series_id: int | None = None
    transaction_code: str | None = None
    content_id: int | None = None
    kind: ContentKind | None = None
    episode_range: EpisodeRange | None = None
    quote_code: str | None = None
    created_at: float = 0.0
    last_activity: float = 0.0

    def idle_for(self, now: float | None = None) -> float:
        return (now if now is not None else time.time()) - self.last_activity
