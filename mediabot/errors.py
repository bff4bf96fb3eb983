"""Error taxonomy shared by the conversation, payment and fulfillment layers.

- ValidationError: malformed user input; the caller re-prompts.
- NotFoundError: catalog item, series or transaction is gone.
- GatewayError: payment provider unreachable, misconfigured or rejecting.
- CallbackDecodeError: provider callback payload could not be parsed.
- DeliveryError: one content item could not be sent to the user.

``user_message`` is what may be shown to the user. ``str(exc)`` is for
logs only.
"""

from __future__ import annotations


class MediaBotError(Exception):
    """Base class for all mediabot errors."""

    user_message = "Sorry, something went wrong. Please try again later."

    def __init__(self, message: str = "", *, user_message: str | None = None):
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class ValidationError(MediaBotError):
    user_message = "That input doesn't look right. Please try again."


class NotFoundError(MediaBotError):
    user_message = "Sorry, that item is no longer available."


class GatewayError(MediaBotError):
    user_message = "We couldn't reach the payment service. Please try again in a few minutes."


class CallbackDecodeError(MediaBotError):
    pass


class DeliveryError(MediaBotError):
    def __init__(self, message: str = "", *, item: str = ""):
        super().__init__(message)
        self.item = item
