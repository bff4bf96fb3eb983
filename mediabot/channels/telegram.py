"""Telegram channel — Bot API over HTTPS.

Outbound: sendMessage, sendPhoto, sendDocument, answerCallbackQuery.
Inbound: parse_update() turns a webhook update into InboundMessage or
InboundAction.

Security: token stored in env var TELEGRAM_BOT_TOKEN, never logged (API
URLs embed it, so errors are reported by method name only).
"""

from __future__ import annotations

import logging
from typing import Any

import requests

from mediabot.channels.protocol import (
    Button,
    InboundAction,
    InboundMessage,
    ReplyKeyboard,
    SendResult,
)

logger = logging.getLogger(__name__)

_API_BASE = "https://api.telegram.org"
_TIMEOUT_SECONDS = 15
_MAX_CAPTION_LENGTH = 1024  # Telegram limit for photo/document captions


class TelegramChannel:
    """Telegram Bot API channel."""

    def __init__(
        self,
        bot_token: str,
        channel_id: str = "telegram",
        session: requests.Session | None = None,
    ):
        self._bot_token = bot_token
        self._channel_id = channel_id
        self._http = session or requests.Session()

    @property
    def channel_id(self) -> str:
        return self._channel_id

    @property
    def is_configured(self) -> bool:
        return bool(self._bot_token)

    def send_text(
        self,
        chat_id: str,
        text: str,
        *,
        buttons: list[Button] | None = None,
        keyboard: ReplyKeyboard | None = None,
    ) -> SendResult:
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text}
        markup = _reply_markup(buttons, keyboard)
        if markup:
            payload["reply_markup"] = markup
        return self._call("sendMessage", payload)

    def send_photo(
        self,
        chat_id: str,
        photo: str,
        caption: str,
        *,
        buttons: list[Button] | None = None,
    ) -> SendResult:
        if not photo:
            return self.send_text(chat_id, caption, buttons=buttons)
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "photo": photo,
            "caption": caption[:_MAX_CAPTION_LENGTH],
        }
        markup = _reply_markup(buttons, None)
        if markup:
            payload["reply_markup"] = markup
        return self._call("sendPhoto", payload)

    def send_document(self, chat_id: str, document: str, caption: str = "") -> SendResult:
        payload: dict[str, Any] = {"chat_id": chat_id, "document": document}
        if caption:
            payload["caption"] = caption[:_MAX_CAPTION_LENGTH]
        return self._call("sendDocument", payload)

    def acknowledge_action(self, callback_id: str) -> SendResult:
        if not callback_id:
            return SendResult(success=True, channel_id=self._channel_id)
        return self._call("answerCallbackQuery", {"callback_query_id": callback_id})

    def _call(self, method: str, payload: dict[str, Any]) -> SendResult:
        if not self._bot_token:
            return SendResult(
                success=False,
                channel_id=self._channel_id,
                error="Telegram bot token not configured",
            )
        try:
            resp = self._http.post(
                f"{_API_BASE}/bot{self._bot_token}/{method}",
                json=payload,
                timeout=_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            return SendResult(
                success=False,
                channel_id=self._channel_id,
                error=f"{method}: {type(e).__name__}",
            )

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if resp.status_code == 200 and body.get("ok"):
            message_id = (body.get("result") or {}).get("message_id", "")
            return SendResult(
                success=True,
                channel_id=self._channel_id,
                response_id=str(message_id) if message_id else "",
            )
        return SendResult(
            success=False,
            channel_id=self._channel_id,
            error=f"{method}: HTTP {resp.status_code} {body.get('description', '')}".strip(),
        )


def _reply_markup(
    buttons: list[Button] | None, keyboard: ReplyKeyboard | None
) -> dict[str, Any] | None:
    """Inline buttons take precedence; Telegram allows one markup per message."""
    if buttons:
        return {
            "inline_keyboard": [[{"text": b.text, "callback_data": b.action}] for b in buttons]
        }
    if keyboard and keyboard.rows:
        return {
            "keyboard": [[{"text": label} for label in row] for row in keyboard.rows],
            "resize_keyboard": True,
        }
    return None


def _display_name(sender: dict[str, Any]) -> str:
    parts = [sender.get("first_name") or "", sender.get("last_name") or ""]
    name = " ".join(p for p in parts if p).strip()
    return name or sender.get("username") or ""


def parse_update(update: dict[str, Any]) -> InboundMessage | InboundAction | None:
    """Normalize a Telegram update. None for updates the bot ignores
    (media uploads, edits, channel posts, messages without a sender)."""
    callback = update.get("callback_query")
    if isinstance(callback, dict):
        sender = callback.get("from") or {}
        chat = (callback.get("message") or {}).get("chat") or {}
        if "id" not in sender or not callback.get("data"):
            return None
        return InboundAction(
            user_id=str(sender["id"]),
            chat_id=str(chat.get("id", sender["id"])),
            data=str(callback["data"]),
            display_name=_display_name(sender),
            callback_id=str(callback.get("id", "")),
        )

    message = update.get("message")
    if isinstance(message, dict):
        sender = message.get("from") or {}
        chat = message.get("chat") or {}
        text = message.get("text")
        if "id" not in sender or "id" not in chat or not isinstance(text, str):
            return None
        return InboundMessage(
            user_id=str(sender["id"]),
            chat_id=str(chat["id"]),
            text=text,
            display_name=_display_name(sender),
        )
    return None
