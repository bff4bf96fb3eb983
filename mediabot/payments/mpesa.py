"""M-Pesa Daraja client — STK push initiation, status query, callback decoding.

Boundary contract:
- initiate() never raises; every failure becomes PaymentInitiation(accepted=False)
  with a message safe to show the customer
- handle_callback() raises CallbackDecodeError for malformed payloads, nothing else
- Credentials come from MpesaSettings and are never logged
"""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Protocol, runtime_checkable

import httpx

from mediabot.config import MpesaSettings
from mediabot.errors import CallbackDecodeError, GatewayError
from mediabot.payments.callback import CallbackResult, parse_callback, parse_status_query
from mediabot.payments.retry import retry_transient

logger = logging.getLogger(__name__)

# Daraja timestamps are Nairobi local time
_EAT = timezone(timedelta(hours=3))

_TIMEOUT_SECONDS = 30.0

# Returned by the STK query endpoint while the customer has not answered yet
_STILL_PROCESSING_CODES = {"500.001.1001"}


@dataclass(frozen=True)
class PaymentInitiation:
    """Outcome of asking the provider to prompt the customer's phone."""
    accepted: bool
    reference: str | None = None  # CheckoutRequestID
    error: str | None = None


def mask_phone(phone: str) -> str:
    """254712345678 -> 2547*****678 for logs."""
    if len(phone) < 8:
        return "***"
    return f"{phone[:4]}{'*' * (len(phone) - 7)}{phone[-3:]}"


@runtime_checkable
class PaymentGateway(Protocol):
    """What the conversation engine and fulfillment dispatcher need from a provider."""

    def initiate(self, phone: str, amount: Decimal, transaction_code: str) -> PaymentInitiation:
        ...

    def query_status(self, checkout_request_id: str) -> CallbackResult | None:
        ...

    def handle_callback(self, payload: Any) -> CallbackResult:
        ...


class MpesaGateway:
    """Synchronous Daraja client. Run it off the event loop."""

    def __init__(self, settings: MpesaSettings, client: httpx.Client | None = None):
        self._settings = settings
        self._client = client or httpx.Client(timeout=_TIMEOUT_SECONDS)

    @property
    def is_configured(self) -> bool:
        return self._settings.is_configured

    def close(self) -> None:
        self._client.close()

    # ── Outbound ──────────────────────────────────────────────────────────

    def initiate(self, phone: str, amount: Decimal, transaction_code: str) -> PaymentInitiation:
        """Send an STK push for ``amount`` to ``phone``, referencing the transaction."""
        try:
            return self._initiate(phone, amount, transaction_code)
        except GatewayError as e:
            logger.warning("STK push for %s not sent: %s", transaction_code, e)
            return PaymentInitiation(accepted=False, error=e.user_message)
        except httpx.HTTPError as e:
            logger.error(
                "STK push for %s failed: %s", transaction_code, type(e).__name__, exc_info=True
            )
            return PaymentInitiation(accepted=False, error=GatewayError.user_message)
        except Exception:
            logger.exception("Unexpected error sending STK push for %s", transaction_code)
            return PaymentInitiation(accepted=False, error=GatewayError.user_message)

    def _initiate(self, phone: str, amount: Decimal, transaction_code: str) -> PaymentInitiation:
        if not self._settings.is_configured:
            raise GatewayError(
                "M-Pesa credentials are not configured",
                user_message="Payments are temporarily unavailable. Please try again later.",
            )
        # Daraja accepts whole shillings only
        whole_amount = int(amount)
        if whole_amount < 1:
            raise GatewayError(
                f"amount {amount} below the M-Pesa minimum",
                user_message="This purchase amount can't be paid with M-Pesa. Please contact support.",
            )

        token = self._get_token()
        timestamp = datetime.now(_EAT).strftime("%Y%m%d%H%M%S")
        payload = {
            "BusinessShortCode": self._settings.shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": whole_amount,
            "PartyA": phone,
            "PartyB": self._settings.shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self._settings.callback_url,
            "AccountReference": transaction_code,
            "TransactionDesc": f"Payment for transaction {transaction_code}",
        }
        response = self._client.post(
            f"{self._settings.base_url}/mpesa/stkpush/v1/processrequest",
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )
        data = _json_or_empty(response)
        if response.status_code != 200 or str(data.get("ResponseCode")) != "0":
            description = data.get("ResponseDescription") or data.get("errorMessage") or ""
            raise GatewayError(
                f"STK push rejected: HTTP {response.status_code} {description}".strip(),
                user_message=(
                    "The payment request was rejected. Please check that the number is "
                    "registered for M-Pesa (format 254XXXXXXXXX) and try again."
                ),
            )

        reference = data.get("CheckoutRequestID")
        logger.info(
            "STK push sent: code=%s phone=%s amount=%d checkout=%s",
            transaction_code, mask_phone(phone), whole_amount, reference,
        )
        return PaymentInitiation(accepted=True, reference=reference)

    def query_status(self, checkout_request_id: str) -> CallbackResult | None:
        """Ask the provider how an STK push ended. None while still pending.

        Raises:
            GatewayError: provider unreachable or misconfigured.
        """
        if not self._settings.is_configured:
            raise GatewayError("M-Pesa credentials are not configured")
        timestamp = datetime.now(_EAT).strftime("%Y%m%d%H%M%S")
        payload = {
            "BusinessShortCode": self._settings.shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        try:
            data = self._post_query(payload)
        except httpx.HTTPError as e:
            raise GatewayError(f"status query failed: {type(e).__name__}") from e

        if str(data.get("errorCode", "")) in _STILL_PROCESSING_CODES:
            return None
        try:
            return parse_status_query(data, checkout_request_id)
        except CallbackDecodeError as e:
            raise GatewayError(str(e)) from e

    # ── Inbound ───────────────────────────────────────────────────────────

    def handle_callback(self, payload: Any) -> CallbackResult:
        """Decode a provider callback. Raises CallbackDecodeError."""
        return parse_callback(payload)

    # ── Internals ─────────────────────────────────────────────────────────

    def _password(self, timestamp: str) -> str:
        raw = f"{self._settings.shortcode}{self._settings.passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    @retry_transient(attempts=3)
    def _get_token(self) -> str:
        response = self._client.get(
            f"{self._settings.base_url}/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            auth=(self._settings.consumer_key, self._settings.consumer_secret),
        )
        response.raise_for_status()
        token = _json_or_empty(response).get("access_token")
        if not token:
            raise GatewayError("OAuth response carried no access_token")
        return token

    @retry_transient(attempts=3)
    def _post_query(self, payload: dict[str, Any]) -> dict[str, Any]:
        token = self._get_token()
        response = self._client.post(
            f"{self._settings.base_url}/mpesa/stkpushquery/v1/query",
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )
        data = _json_or_empty(response)
        # Daraja reports "still processing" as an HTTP 500 with an errorCode body
        if response.status_code >= 500 and str(data.get("errorCode", "")) in _STILL_PROCESSING_CODES:
            return data
        response.raise_for_status()
        return data


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
