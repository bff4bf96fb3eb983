"""Ledger contract and in-memory implementation.

Contract:
- ``create_pending`` always yields a code unique within the ledger
- ``mark_terminal`` is a guarded compare-and-set on status == pending;
  it returns True for exactly one caller per code
- Readers receive copies; the ledger is the only writer of its rows
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from decimal import Decimal
from typing import Protocol, runtime_checkable

from mediabot.catalog.models import ContentKind, EpisodeRange
from mediabot.ledger.models import (
    Transaction,
    TransactionStatus,
    generate_transaction_code,
    utcnow,
)

logger = logging.getLogger(__name__)

_MAX_CODE_ATTEMPTS = 5


@runtime_checkable
class Ledger(Protocol):
    def create_pending(
        self,
        user_id: str,
        chat_id: str,
        amount: Decimal,
        kind: ContentKind,
        content_id: int,
        episode_range: EpisodeRange | None = None,
    ) -> str:
        """Insert a pending transaction. Returns its code."""
        ...

    def find_by_code(self, code: str) -> Transaction | None:
        ...

    def find_by_reference(self, provider_reference: str) -> Transaction | None:
        ...

    def attach_reference(self, code: str, provider_reference: str) -> bool:
        ...

    def mark_terminal(
        self,
        code: str,
        status: TransactionStatus,
        receipt_number: str | None = None,
    ) -> bool:
        """Move a pending transaction to a terminal status.

        Returns False when the transaction is missing or already terminal.
        """
        ...

    def list_for_user(self, user_id: str, limit: int = 10) -> list[Transaction]:
        """Most recent first."""
        ...

    def list_pending(self, limit: int = 100, *, with_reference: bool = False) -> list[Transaction]:
        """Oldest first. ``with_reference`` keeps only rows sent to the provider."""
        ...


class InMemoryLedger:
    """Lock-guarded dict ledger."""

    def __init__(self) -> None:
        self._rows: dict[str, Transaction] = {}
        self._lock = threading.Lock()

    def create_pending(
        self,
        user_id: str,
        chat_id: str,
        amount: Decimal,
        kind: ContentKind,
        content_id: int,
        episode_range: EpisodeRange | None = None,
    ) -> str:
        if kind == ContentKind.MOVIE and episode_range is not None:
            raise ValueError("movie transactions carry no episode range")
        now = utcnow()
        with self._lock:
            for _ in range(_MAX_CODE_ATTEMPTS):
                code = generate_transaction_code(kind)
                if code not in self._rows:
                    break
            else:
                raise RuntimeError("could not generate a unique transaction code")
            self._rows[code] = Transaction(
                code=code,
                user_id=user_id,
                chat_id=chat_id,
                amount=Decimal(amount),
                kind=kind,
                content_id=content_id,
                episode_range=episode_range,
                created_at=now,
                updated_at=now,
            )
        logger.info(
            "Transaction created: %s kind=%s content=%s amount=%s",
            code, kind.value, content_id, amount,
        )
        return code

    def find_by_code(self, code: str) -> Transaction | None:
        with self._lock:
            row = self._rows.get(code)
            return dataclasses.replace(row) if row else None

    def find_by_reference(self, provider_reference: str) -> Transaction | None:
        if not provider_reference:
            return None
        with self._lock:
            for row in self._rows.values():
                if row.provider_reference == provider_reference:
                    return dataclasses.replace(row)
        return None

    def attach_reference(self, code: str, provider_reference: str) -> bool:
        with self._lock:
            row = self._rows.get(code)
            if row is None:
                return False
            row.provider_reference = provider_reference
            row.updated_at = utcnow()
            return True

    def mark_terminal(
        self,
        code: str,
        status: TransactionStatus,
        receipt_number: str | None = None,
    ) -> bool:
        if not status.is_terminal:
            raise ValueError(f"not a terminal status: {status}")
        with self._lock:
            row = self._rows.get(code)
            if row is None or row.status != TransactionStatus.PENDING:
                return False
            row.status = status
            row.receipt_number = receipt_number or row.receipt_number
            row.updated_at = utcnow()
        logger.info("Transaction %s -> %s", code, status.value)
        return True

    def list_for_user(self, user_id: str, limit: int = 10) -> list[Transaction]:
        with self._lock:
            # dict order is creation order
            rows = [
                dataclasses.replace(r) for r in reversed(self._rows.values())
                if r.user_id == user_id
            ]
        return rows[:limit]

    def list_pending(self, limit: int = 100, *, with_reference: bool = False) -> list[Transaction]:
        with self._lock:
            rows = [
                dataclasses.replace(r) for r in self._rows.values()
                if r.status == TransactionStatus.PENDING
                and (r.provider_reference or not with_reference)
            ]
        return rows[:limit]
