"""Tests for the M-Pesa payment client and callback decoding.

Tests:
- Callback envelope decoding (success, failure, malformed)
- STK push initiation over a mocked Daraja (httpx.MockTransport)
- Initiation never raises
- Status query (complete, still processing, unreachable)
- Retry/backoff on transient errors
"""

from __future__ import annotations

import base64
import json
from decimal import Decimal
from unittest.mock import patch

import httpx
import pytest
from fakes import stk_callback

from mediabot.config import MpesaSettings
from mediabot.errors import CallbackDecodeError, GatewayError
from mediabot.payments.callback import parse_callback, parse_status_query
from mediabot.payments.mpesa import MpesaGateway, mask_phone
from mediabot.payments.retry import backoff_delay

SETTINGS = MpesaSettings(
    consumer_key="key",
    consumer_secret="secret",
    passkey="passkey",
    shortcode="174379",
    callback_url="https://bot.example.com/mpesa/callback?token=t",
)


def _gateway(handler, settings: MpesaSettings = SETTINGS) -> MpesaGateway:
    return MpesaGateway(settings, client=httpx.Client(transport=httpx.MockTransport(handler)))


class _Daraja:
    """Scripted Daraja sandbox recording the requests it receives."""

    def __init__(self, stk_response=None, query_response=None, token_status=200):
        self.requests: list[httpx.Request] = []
        self.stk_response = stk_response or (
            200,
            {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": "ws_CO_191220191020363925",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
            },
        )
        self.query_response = query_response
        self.token_status = token_status

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth/v1/generate":
            if self.token_status != 200:
                return httpx.Response(self.token_status)
            return httpx.Response(200, json={"access_token": "tok", "expires_in": "3599"})
        if request.url.path == "/mpesa/stkpush/v1/processrequest":
            status, body = self.stk_response
            return httpx.Response(status, json=body)
        if request.url.path == "/mpesa/stkpushquery/v1/query":
            status, body = self.query_response
            return httpx.Response(status, json=body)
        return httpx.Response(404)

    def stk_body(self) -> dict:
        stk = [r for r in self.requests if r.url.path.endswith("processrequest")]
        return json.loads(stk[-1].content)


# ── Callback decoding ─────────────────────────────────────────────────────


class TestParseCallback:
    def test_success(self):
        result = parse_callback(stk_callback(account_reference="MOV12345678ABCD"))
        assert result.succeeded is True
        assert result.result_code == 0
        assert result.checkout_request_id == "ws_CO_191220191020363925"
        assert result.transaction_code == "MOV12345678ABCD"
        assert result.receipt_number == "NLJ7RT61SV"
        assert result.amount == Decimal("100")
        assert result.phone == "254712345678"

    def test_failure_has_no_metadata(self):
        result = parse_callback(stk_callback(result_code=1032))
        assert result.succeeded is False
        assert result.result_code == 1032
        assert result.receipt_number is None
        assert result.transaction_code is None

    @pytest.mark.parametrize(
        "payload",
        [
            None,
            [],
            "text",
            {},
            {"Body": {}},
            {"Body": {"stkCallback": {"ResultCode": 0}}},
            {"Body": {"stkCallback": {"CheckoutRequestID": "", "ResultCode": 0}}},
            {"Body": {"stkCallback": {"CheckoutRequestID": "ws", "ResultCode": "zero"}}},
        ],
    )
    def test_malformed_raises(self, payload):
        with pytest.raises(CallbackDecodeError):
            parse_callback(payload)

    def test_status_query_pending(self):
        assert parse_status_query({"ResponseCode": "0"}, "ws_1") is None

    def test_status_query_done(self):
        result = parse_status_query({"ResultCode": "1032", "ResultDesc": "Cancelled"}, "ws_1")
        assert result.checkout_request_id == "ws_1"
        assert result.succeeded is False


# ── STK push ──────────────────────────────────────────────────────────────


class TestInitiate:
    def test_accepted(self):
        daraja = _Daraja()
        result = _gateway(daraja).initiate("254712345678", Decimal("100.00"), "MOV1")
        assert result.accepted is True
        assert result.reference == "ws_CO_191220191020363925"

        body = daraja.stk_body()
        assert body["Amount"] == 100
        assert body["AccountReference"] == "MOV1"
        assert body["PhoneNumber"] == "254712345678"
        assert body["TransactionType"] == "CustomerPayBillOnline"
        decoded = base64.b64decode(body["Password"]).decode()
        assert decoded == f"174379passkey{body['Timestamp']}"
        assert len(body["Timestamp"]) == 14

    def test_bearer_token_sent(self):
        daraja = _Daraja()
        _gateway(daraja).initiate("254712345678", Decimal("100"), "MOV1")
        stk = [r for r in daraja.requests if r.url.path.endswith("processrequest")][0]
        assert stk.headers["Authorization"] == "Bearer tok"

    def test_fractional_amount_truncated(self):
        daraja = _Daraja()
        _gateway(daraja).initiate("254712345678", Decimal("99.90"), "MOV1")
        assert daraja.stk_body()["Amount"] == 99

    def test_provider_rejection(self):
        daraja = _Daraja(stk_response=(400, {"errorCode": "400.002.02", "errorMessage": "Invalid PhoneNumber"}))
        result = _gateway(daraja).initiate("254712345678", Decimal("100"), "MOV1")
        assert result.accepted is False
        assert "254XXXXXXXXX" in result.error

    def test_not_configured(self):
        daraja = _Daraja()
        result = _gateway(daraja, MpesaSettings()).initiate("254712345678", Decimal("100"), "MOV1")
        assert result.accepted is False
        assert daraja.requests == []

    def test_sub_shilling_amount(self):
        result = _gateway(_Daraja()).initiate("254712345678", Decimal("0.50"), "MOV1")
        assert result.accepted is False

    @patch("mediabot.payments.retry.time.sleep")
    def test_network_failure_never_raises(self, _sleep):
        def broken(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = _gateway(broken).initiate("254712345678", Decimal("100"), "MOV1")
        assert result.accepted is False
        assert result.error == GatewayError.user_message

    @patch("mediabot.payments.retry.time.sleep")
    def test_token_fetch_retried(self, sleep):
        calls = {"n": 0}
        daraja = _Daraja()

        def flaky(request):
            if request.url.path == "/oauth/v1/generate" and calls["n"] < 2:
                calls["n"] += 1
                return httpx.Response(503)
            return daraja(request)

        result = _gateway(flaky).initiate("254712345678", Decimal("100"), "MOV1")
        assert result.accepted is True
        assert sleep.call_count == 2

    @patch("mediabot.payments.retry.time.sleep")
    def test_stk_push_not_retried(self, _sleep):
        daraja = _Daraja(stk_response=(503, {}))
        _gateway(daraja).initiate("254712345678", Decimal("100"), "MOV1")
        stk = [r for r in daraja.requests if r.url.path.endswith("processrequest")]
        assert len(stk) == 1


# ── Status query ──────────────────────────────────────────────────────────


class TestQueryStatus:
    def test_completed(self):
        daraja = _Daraja(query_response=(200, {
            "ResponseCode": "0",
            "CheckoutRequestID": "ws_CO_1",
            "ResultCode": "0",
            "ResultDesc": "The service request is processed successfully.",
        }))
        result = _gateway(daraja).query_status("ws_CO_1")
        assert result.succeeded is True
        assert result.checkout_request_id == "ws_CO_1"

    def test_still_processing(self):
        daraja = _Daraja(query_response=(500, {
            "errorCode": "500.001.1001",
            "errorMessage": "The transaction is being processed",
        }))
        assert _gateway(daraja).query_status("ws_CO_1") is None

    @patch("mediabot.payments.retry.time.sleep")
    def test_unreachable_raises_gateway_error(self, _sleep):
        daraja = _Daraja(query_response=(502, {}))
        with pytest.raises(GatewayError):
            _gateway(daraja).query_status("ws_CO_1")

    def test_not_configured(self):
        with pytest.raises(GatewayError):
            _gateway(_Daraja(), MpesaSettings()).query_status("ws_CO_1")


class TestHelpers:
    def test_mask_phone(self):
        assert mask_phone("254712345678") == "2547*****678"
        assert mask_phone("123") == "***"

    def test_backoff_grows_and_caps(self):
        assert backoff_delay(1, base_delay=1.0, max_delay=8.0, jitter=0) == 1.0
        assert backoff_delay(3, base_delay=1.0, max_delay=8.0, jitter=0) == 4.0
        assert backoff_delay(10, base_delay=1.0, max_delay=8.0, jitter=0) == 8.0
