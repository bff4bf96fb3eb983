"""Transaction data model.

Status lifecycle:
    pending -> completed
    pending -> failed

Terminal states are final. ``Ledger.mark_terminal`` enforces this at the
storage layer so duplicate callbacks cannot double-fulfill.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from mediabot.catalog.models import ContentKind, EpisodeRange

PAYMENT_METHOD_MPESA = "M-Pesa"

_CODE_PREFIX = {
    ContentKind.MOVIE: "MOV",
    ContentKind.SERIES: "SER",
}


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self != TransactionStatus.PENDING


@dataclass
class Transaction:
    code: str
    user_id: str
    chat_id: str
    amount: Decimal
    kind: ContentKind
    content_id: int
    episode_range: EpisodeRange | None = None
    payment_method: str = PAYMENT_METHOD_MPESA
    status: TransactionStatus = TransactionStatus.PENDING
    provider_reference: str | None = None  # M-Pesa CheckoutRequestID
    receipt_number: str | None = None  # M-Pesa receipt, set on success
    created_at: datetime | None = None
    updated_at: datetime | None = None


def generate_transaction_code(kind: ContentKind) -> str:
    """Human-readable code: kind prefix + 8 timestamp digits + random suffix.

    e.g. ``MOV48213377A91F``. The ledger retries on the (unlikely) collision.
    """
    stamp = str(int(time.time() * 1000))[-8:]
    return f"{_CODE_PREFIX[kind]}{stamp}{secrets.token_hex(2).upper()}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
