"""M-Pesa STK callback decoding — the single parsing boundary.

Daraja posts:

    {"Body": {"stkCallback": {
        "MerchantRequestID": "...",
        "CheckoutRequestID": "ws_CO_...",
        "ResultCode": 0,
        "ResultDesc": "The service request is processed successfully.",
        "CallbackMetadata": {"Item": [
            {"Name": "Amount", "Value": 100},
            {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
            {"Name": "TransactionDate", "Value": 20191219102115},
            {"Name": "PhoneNumber", "Value": 254712345678}]}}}}

Everything downstream sees only ``CallbackResult``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from mediabot.errors import CallbackDecodeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallbackResult:
    """Normalized payment outcome.

    ``transaction_code`` is the account reference when the provider echoes
    it; otherwise the dispatcher resolves the transaction by
    ``checkout_request_id``.
    """
    checkout_request_id: str
    succeeded: bool
    result_code: int
    result_desc: str = ""
    transaction_code: str | None = None
    receipt_number: str | None = None
    amount: Decimal | None = None
    phone: str | None = None


class _MetadataItem(BaseModel):
    name: str = Field(alias="Name")
    value: Any = Field(default=None, alias="Value")


class _Metadata(BaseModel):
    items: list[_MetadataItem] = Field(default_factory=list, alias="Item")


class _StkCallback(BaseModel):
    model_config = ConfigDict(extra="ignore")

    merchant_request_id: str = Field(default="", alias="MerchantRequestID")
    checkout_request_id: str = Field(alias="CheckoutRequestID", min_length=1)
    result_code: int = Field(alias="ResultCode")
    result_desc: str = Field(default="", alias="ResultDesc")
    account_reference: str | None = Field(default=None, alias="AccountReference")
    metadata: _Metadata | None = Field(default=None, alias="CallbackMetadata")


class _Body(BaseModel):
    stk_callback: _StkCallback = Field(alias="stkCallback")


class _Envelope(BaseModel):
    body: _Body = Field(alias="Body")


def _metadata_values(metadata: _Metadata | None) -> dict[str, Any]:
    if metadata is None:
        return {}
    return {item.name: item.value for item in metadata.items}


def _to_decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def parse_callback(payload: Any) -> CallbackResult:
    """Decode a raw STK callback payload.

    Raises:
        CallbackDecodeError: payload is not a well-formed STK callback.
    """
    if not isinstance(payload, dict):
        raise CallbackDecodeError(f"callback payload is {type(payload).__name__}, not an object")
    try:
        envelope = _Envelope.model_validate(payload)
    except PydanticValidationError as e:
        raise CallbackDecodeError(f"malformed STK callback: {e.error_count()} error(s)") from e

    cb = envelope.body.stk_callback
    meta = _metadata_values(cb.metadata)
    phone = meta.get("PhoneNumber")
    receipt = meta.get("MpesaReceiptNumber")
    return CallbackResult(
        checkout_request_id=cb.checkout_request_id,
        succeeded=cb.result_code == 0,
        result_code=cb.result_code,
        result_desc=cb.result_desc,
        transaction_code=cb.account_reference or None,
        receipt_number=str(receipt) if receipt is not None else None,
        amount=_to_decimal(meta.get("Amount")),
        phone=str(phone) if phone is not None else None,
    )


class _StatusQueryResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    checkout_request_id: str = Field(default="", alias="CheckoutRequestID")
    result_code: int | None = Field(default=None, alias="ResultCode")
    result_desc: str = Field(default="", alias="ResultDesc")


def parse_status_query(data: Any, checkout_request_id: str) -> CallbackResult | None:
    """Decode an STK push query response. None while still processing.

    Raises:
        CallbackDecodeError: response body is not a status object.
    """
    if not isinstance(data, dict):
        raise CallbackDecodeError("status query response is not an object")
    try:
        parsed = _StatusQueryResponse.model_validate(data)
    except PydanticValidationError as e:
        raise CallbackDecodeError("malformed status query response") from e
    if parsed.result_code is None:
        return None
    return CallbackResult(
        checkout_request_id=parsed.checkout_request_id or checkout_request_id,
        succeeded=parsed.result_code == 0,
        result_code=parsed.result_code,
        result_desc=parsed.result_desc,
    )
