"""Conversation transition table.

Every state change the engine makes goes through next_state(). A
(state, trigger) pair missing from the table is a programming error.
Rows keyed by ANY apply from every state (menu commands, purchase buttons,
failures) and are only consulted when no state-specific row exists.
"""

from __future__ import annotations

from enum import Enum

from mediabot.errors import MediaBotError
from mediabot.sessions.models import ConversationState

IDLE = ConversationState.IDLE
MOVIE_TITLE = ConversationState.WAITING_FOR_MOVIE_TITLE
SERIES_TITLE = ConversationState.WAITING_FOR_SERIES_TITLE
EPISODE_RANGE = ConversationState.WAITING_FOR_EPISODE_RANGE
PHONE = ConversationState.WAITING_FOR_PHONE

ANY = None


class Trigger(str, Enum):
    """What happened while handling one inbound event."""
    START = "start"
    HELP = "help"
    SHOW_TRANSACTIONS = "show_transactions"
    BROWSE_MOVIES = "browse_movies"
    BROWSE_SERIES = "browse_series"
    MOVIE_TITLE_SUBMITTED = "movie_title_submitted"
    SERIES_MATCHED = "series_matched"
    SERIES_NOT_FOUND = "series_not_found"
    RANGE_QUOTED = "range_quoted"
    INPUT_REJECTED = "input_rejected"
    PURCHASE_STARTED = "purchase_started"
    CONTENT_UNAVAILABLE = "content_unavailable"
    PAYMENT_REQUESTED = "payment_requested"
    PAYMENT_FAILED = "payment_failed"
    UNRECOGNIZED = "unrecognized"
    FAILED = "failed"


class TransitionError(MediaBotError):
    """No row for (state, trigger)."""


TRANSITIONS: dict[tuple[ConversationState | None, Trigger], ConversationState] = {
    # Menu commands restart from anywhere
    (ANY, Trigger.START): IDLE,
    (ANY, Trigger.HELP): IDLE,
    (ANY, Trigger.SHOW_TRANSACTIONS): IDLE,
    (ANY, Trigger.BROWSE_MOVIES): MOVIE_TITLE,
    (ANY, Trigger.BROWSE_SERIES): SERIES_TITLE,
    # Movie search
    (MOVIE_TITLE, Trigger.MOVIE_TITLE_SUBMITTED): IDLE,
    # Series search and range quote
    (SERIES_TITLE, Trigger.SERIES_MATCHED): EPISODE_RANGE,
    (SERIES_TITLE, Trigger.SERIES_NOT_FOUND): IDLE,
    (EPISODE_RANGE, Trigger.INPUT_REJECTED): EPISODE_RANGE,
    (EPISODE_RANGE, Trigger.RANGE_QUOTED): IDLE,
    # Purchase buttons work from any state and overwrite the context
    (ANY, Trigger.PURCHASE_STARTED): PHONE,
    (ANY, Trigger.CONTENT_UNAVAILABLE): IDLE,
    # Phone capture
    (PHONE, Trigger.INPUT_REJECTED): PHONE,
    (PHONE, Trigger.PAYMENT_REQUESTED): IDLE,
    (PHONE, Trigger.PAYMENT_FAILED): IDLE,
    # Free text with no flow in progress
    (IDLE, Trigger.UNRECOGNIZED): IDLE,
    # Unexpected errors always land in IDLE
    (ANY, Trigger.FAILED): IDLE,
}


def next_state(state: ConversationState, trigger: Trigger) -> ConversationState:
    """Look up the target state for ``trigger`` fired in ``state``.

    Raises:
        TransitionError: the pair is not in the table.
    """
    target = TRANSITIONS.get((state, trigger))
    if target is None:
        target = TRANSITIONS.get((ANY, trigger))
    if target is None:
        raise TransitionError(f"no transition from {state.value} on {trigger.value}")
    return target
