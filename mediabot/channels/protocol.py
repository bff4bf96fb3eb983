"""Channel protocol — what the engine and dispatcher need from a messenger.

Inbound events are normalized into InboundMessage / InboundAction before
they reach the conversation engine. Outbound calls return SendResult and
never raise; callers decide whether a failed send matters.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class Button:
    """Inline action button; ``action`` is echoed back as InboundAction.data."""
    text: str
    action: str


@dataclass
class SendResult:
    """Result of one outbound call."""
    success: bool
    channel_id: str
    error: str = ""
    response_id: str = ""  # provider message id


@dataclass(frozen=True)
class InboundMessage:
    """Free text (or a reply-keyboard button label) typed by a user."""
    user_id: str
    chat_id: str
    text: str
    display_name: str = ""


@dataclass(frozen=True)
class InboundAction:
    """An inline button press."""
    user_id: str
    chat_id: str
    data: str
    display_name: str = ""
    callback_id: str = ""


@dataclass
class ReplyKeyboard:
    """Persistent menu shown under the input box."""
    rows: list[list[str]] = field(default_factory=list)


@runtime_checkable
class MessagingChannel(Protocol):
    """Outbound side of a messaging platform."""

    @property
    def channel_id(self) -> str:
        ...

    @property
    def is_configured(self) -> bool:
        ...

    def send_text(
        self,
        chat_id: str,
        text: str,
        *,
        buttons: list[Button] | None = None,
        keyboard: ReplyKeyboard | None = None,
    ) -> SendResult:
        ...

    def send_photo(
        self,
        chat_id: str,
        photo: str,
        caption: str,
        *,
        buttons: list[Button] | None = None,
    ) -> SendResult:
        ...

    def send_document(self, chat_id: str, document: str, caption: str = "") -> SendResult:
        """Deliver a media file by its platform file reference."""
        ...

    def acknowledge_action(self, callback_id: str) -> SendResult:
        ...
