"""Webhook authentication — constant-time shared-secret checks.

Security contract:
- All comparisons use hmac.compare_digest() (constant-time)
- Missing secret env var -> verification always fails (fail-closed)
- Telegram: secret_token registered with setWebhook, echoed back in the
  X-Telegram-Bot-Api-Secret-Token header
- M-Pesa: Daraja cannot sign callbacks, so the registered CallBackURL
  carries a ?token= query parameter
"""

from __future__ import annotations

import hmac
import logging
import os

logger = logging.getLogger(__name__)

_TELEGRAM_WEBHOOK_SECRET = os.environ.get("TELEGRAM_WEBHOOK_SECRET", "")
_MPESA_CALLBACK_TOKEN = os.environ.get("MPESA_CALLBACK_TOKEN", "")

TELEGRAM_SECRET_HEADER = "x-telegram-bot-api-secret-token"


def _matches(expected: str, presented: str | None) -> bool:
    if not presented:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), presented.encode("utf-8"))


def verify_telegram(secret_header: str | None) -> bool:
    """Check the secret token Telegram echoes on every webhook call."""
    if not _TELEGRAM_WEBHOOK_SECRET:
        logger.warning("TELEGRAM_WEBHOOK_SECRET not set, rejecting update")
        return False
    return _matches(_TELEGRAM_WEBHOOK_SECRET, secret_header)


def verify_mpesa_token(token: str | None) -> bool:
    """Check the token embedded in the registered M-Pesa callback URL."""
    if not _MPESA_CALLBACK_TOKEN:
        logger.warning("MPESA_CALLBACK_TOKEN not set, rejecting callback")
        return False
    return _matches(_MPESA_CALLBACK_TOKEN, token)
