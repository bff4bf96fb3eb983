"""Parsing of user-typed text and inline-button payloads.

Button payloads are the only state the bot round-trips through Telegram:

    purchase_movie_<movie_id>
    purchase_series_<series_id>_<start>-<end>

Telegram caps callback data at 64 bytes, which both forms stay well under.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from mediabot.catalog.models import ContentKind, EpisodeRange
from mediabot.conversation.transitions import Trigger
from mediabot.errors import ValidationError

PHONE_PATTERN = re.compile(r"^254\d{9}$", re.ASCII)

_MOVIE_ACTION = re.compile(r"^purchase_movie_(\d+)$", re.ASCII)
_SERIES_ACTION = re.compile(r"^purchase_series_(\d+)_(\d+)-(\d+)$", re.ASCII)

# Reply-keyboard labels, matched exactly
MOVIES_BUTTON = "🎬 Movies"
SERIES_BUTTON = "📺 Series"
TRANSACTIONS_BUTTON = "💳 My Transactions"
HELP_BUTTON = "❓ Help"

_COMMANDS = {
    "/start": Trigger.START,
    "/help": Trigger.HELP,
    "/movies": Trigger.BROWSE_MOVIES,
    "/series": Trigger.BROWSE_SERIES,
    "/transactions": Trigger.SHOW_TRANSACTIONS,
}

_BUTTON_LABELS = {
    MOVIES_BUTTON: Trigger.BROWSE_MOVIES,
    "Movies": Trigger.BROWSE_MOVIES,
    SERIES_BUTTON: Trigger.BROWSE_SERIES,
    "Series": Trigger.BROWSE_SERIES,
    TRANSACTIONS_BUTTON: Trigger.SHOW_TRANSACTIONS,
    "My Transactions": Trigger.SHOW_TRANSACTIONS,
    HELP_BUTTON: Trigger.HELP,
    "Help": Trigger.HELP,
}


def match_command(text: str) -> Trigger | None:
    """Map a slash command or menu label to its trigger.

    ``/start@SomeBot`` and ``/start payload`` both count as ``/start``.
    Anything else is free text for the current state.
    """
    text = (text or "").strip()
    if text.startswith("/"):
        command = text.split(maxsplit=1)[0].split("@", 1)[0].lower()
        return _COMMANDS.get(command)
    return _BUTTON_LABELS.get(text)


def normalize_phone(text: str) -> str:
    """Return the phone as ``254XXXXXXXXX``.

    Spaces and a leading ``+`` are tolerated; nothing else is rewritten.

    Raises:
        ValidationError: the number is not a Kenyan MSISDN in 254 format.
    """
    phone = (text or "").replace(" ", "").strip()
    if phone.startswith("+"):
        phone = phone[1:]
    if not PHONE_PATTERN.match(phone):
        raise ValidationError(
            "phone number not in 254XXXXXXXXX format",
            user_message=(
                "Invalid phone number format. Please retry with format "
                "254XXXXXXXXX (e.g. 254712345678)."
            ),
        )
    return phone


@dataclass(frozen=True)
class PurchaseAction:
    kind: ContentKind
    content_id: int
    episode_range: EpisodeRange | None = None


def movie_action(movie_id: int) -> str:
    return f"purchase_movie_{movie_id}"


def series_action(series_id: int, episode_range: EpisodeRange) -> str:
    return f"purchase_series_{series_id}_{episode_range.start}-{episode_range.end}"


def parse_action(data: str) -> PurchaseAction:
    """Decode an inline-button payload.

    Raises:
        ValidationError: unknown or malformed payload (stale keyboards
            from older bot versions end up here).
    """
    match = _MOVIE_ACTION.match(data or "")
    if match:
        return PurchaseAction(ContentKind.MOVIE, int(match.group(1)))
    match = _SERIES_ACTION.match(data or "")
    if match:
        episode_range = EpisodeRange(int(match.group(2)), int(match.group(3)))
        return PurchaseAction(ContentKind.SERIES, int(match.group(1)), episode_range)
    raise ValidationError(f"unrecognized action payload: {data!r}")
