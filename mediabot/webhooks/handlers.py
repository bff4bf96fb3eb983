"""Webhook HTTP handlers — FastAPI routes for Telegram and M-Pesa.

Each handler:
1. Verifies the shared secret (fail-closed)
2. Parses the payload
3. Checks idempotency (Redis prefilter, fail-open). A payment callback is
   only recorded as seen after it settled a known transaction, so provider
   retries still get through when dispatch failed or the transaction was
   not matchable yet
4. Hands the event to the router and returns immediately

Security contract:
- Never return error details to the caller
- Telegram always gets 200 after verification; anything else makes it retry
- M-Pesa gets {"ResultCode", "ResultDesc"}: 0 when accepted (including
  duplicates and unknown transactions), 1 when rejected
- Every callback is logged as a CALLBACK_AUDIT line
"""

from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from mediabot.channels.protocol import InboundAction
from mediabot.channels.telegram import parse_update
from mediabot.errors import CallbackDecodeError
from mediabot.fulfillment.dispatcher import (
    FulfillmentDispatcher,
    FulfillmentOutcome,
    FulfillmentStatus,
)
from mediabot.payments.callback import CallbackResult
from mediabot.webhooks.idempotency import is_duplicate, mark_seen, seen_before
from mediabot.webhooks.verification import (
    TELEGRAM_SECRET_HEADER,
    verify_mpesa_token,
    verify_telegram,
)

if TYPE_CHECKING:
    from mediabot.app import Services

logger = logging.getLogger(__name__)

_ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}
_REJECTED = {"ResultCode": 1, "ResultDesc": "Rejected"}


def _log_callback(checkout_id: str, code: str, result: str, status: str) -> None:
    logger.info(
        "CALLBACK_AUDIT provider=mpesa checkout=%s code=%s result=%s status=%s",
        checkout_id or "-",
        code or "-",
        result,
        status,
    )


def settle_callback(dispatcher: FulfillmentDispatcher, result: CallbackResult) -> FulfillmentOutcome:
    """Run the dispatcher, then record the checkout ID as seen.

    Unknown results and exceptions leave the ID unrecorded.
    """
    outcome = dispatcher.handle(result)
    if outcome.status != FulfillmentStatus.UNKNOWN:
        mark_seen("mpesa", result.checkout_request_id)
    return outcome


def _parse_json(body: bytes):
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


async def _handle_telegram(request: Request, services: Services) -> JSONResponse:
    if not verify_telegram(request.headers.get(TELEGRAM_SECRET_HEADER)):
        logger.warning("Telegram update rejected: bad secret token")
        return JSONResponse({"ok": False}, status_code=401)

    update = _parse_json(await request.body())
    if not isinstance(update, dict):
        logger.info("Ignoring Telegram update with invalid JSON")
        return JSONResponse({"ok": True})

    update_id = update.get("update_id")
    if update_id is not None and is_duplicate("telegram", str(update_id)):
        return JSONResponse({"ok": True})

    event = parse_update(update)
    if event is None:
        logger.debug("Ignoring unsupported Telegram update %s", update_id)
        return JSONResponse({"ok": True})

    engine = services.engine
    handler = engine.handle_action if isinstance(event, InboundAction) else engine.handle_message
    services.router.submit_for_user(event.user_id, handler, event)
    return JSONResponse({"ok": True})


async def _handle_mpesa(request: Request, services: Services) -> JSONResponse:
    start = time.time()
    if not verify_mpesa_token(request.query_params.get("token")):
        _log_callback("", "", "unknown", "token_rejected")
        return JSONResponse(_REJECTED, status_code=401)

    payload = _parse_json(await request.body())
    try:
        result = services.gateway.handle_callback(payload)
    except CallbackDecodeError as e:
        logger.warning("Undecodable M-Pesa callback: %s", e)
        _log_callback("", "", "unknown", "decode_failed")
        return JSONResponse(_REJECTED)

    outcome = "success" if result.succeeded else f"failed:{result.result_code}"
    if seen_before("mpesa", result.checkout_request_id):
        _log_callback(result.checkout_request_id, result.transaction_code, outcome, "duplicate")
        return JSONResponse(_ACCEPTED)

    services.router.submit(settle_callback, services.dispatcher, result)
    _log_callback(result.checkout_request_id, result.transaction_code, outcome, "dispatched")
    logger.debug("M-Pesa callback accepted in %.1fms", (time.time() - start) * 1000)
    return JSONResponse(_ACCEPTED)


def register_routes(app: FastAPI, services: Services) -> None:
    """Register the webhook and health routes on the FastAPI app."""

    @app.post("/telegram/webhook")
    async def telegram_webhook(request: Request):
        """Receive Telegram updates (secret-token verified)."""
        return await _handle_telegram(request, services)

    @app.post("/mpesa/callback")
    async def mpesa_callback(request: Request):
        """Receive M-Pesa STK push results (token verified)."""
        return await _handle_mpesa(request, services)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "storage": services.settings.storage_backend,
            "active_sessions": services.sessions.active_count,
            "pending_events": services.router.pending,
        }

    logger.info("Routes registered: /telegram/webhook, /mpesa/callback, /health")
