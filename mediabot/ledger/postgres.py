"""Postgres-backed ledger.

Expects the ``transactions`` table owned by the admin tooling:

    transaction_code   TEXT UNIQUE NOT NULL
    user_id            TEXT NOT NULL      -- platform user id
    chat_id            TEXT NOT NULL
    amount             NUMERIC(10, 2) NOT NULL
    type               TEXT NOT NULL      -- movie | series
    content_id         INT NOT NULL
    start_ep, end_ep   INT NULL           -- series only
    payment_method     TEXT NOT NULL
    status             TEXT NOT NULL DEFAULT 'pending'
    provider_reference TEXT NULL
    receipt_number     TEXT NULL
    created_at, updated_at TIMESTAMPTZ DEFAULT now()

``mark_terminal`` is a single conditional UPDATE, so concurrent duplicate
callbacks race on the row lock and only one sees rowcount == 1.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

import psycopg
from psycopg.rows import dict_row

from mediabot.catalog.models import ContentKind, EpisodeRange
from mediabot.ledger.models import (
    PAYMENT_METHOD_MPESA,
    Transaction,
    TransactionStatus,
    generate_transaction_code,
)

logger = logging.getLogger(__name__)

_MAX_CODE_ATTEMPTS = 5


def _transaction(row: dict[str, Any]) -> Transaction:
    episode_range = None
    if row.get("start_ep") is not None and row.get("end_ep") is not None:
        episode_range = EpisodeRange(row["start_ep"], row["end_ep"])
    return Transaction(
        code=row["transaction_code"],
        user_id=str(row["user_id"]),
        chat_id=str(row["chat_id"]),
        amount=Decimal(row["amount"]),
        kind=ContentKind(row["type"]),
        content_id=row["content_id"],
        episode_range=episode_range,
        payment_method=row.get("payment_method") or PAYMENT_METHOD_MPESA,
        status=TransactionStatus(row["status"]),
        provider_reference=row.get("provider_reference"),
        receipt_number=row.get("receipt_number"),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


class PostgresLedger:
    """Ledger over the ``transactions`` table."""

    def __init__(self, database_url: str):
        self._database_url = database_url

    def _get_conn(self) -> psycopg.Connection:
        return psycopg.connect(self._database_url, autocommit=True, row_factory=dict_row)

    def create_pending(
        self,
        user_id: str,
        chat_id: str,
        amount: Decimal,
        kind: ContentKind,
        content_id: int,
        episode_range: EpisodeRange | None = None,
    ) -> str:
        start = episode_range.start if episode_range else None
        end = episode_range.end if episode_range else None
        with self._get_conn() as conn:
            for _ in range(_MAX_CODE_ATTEMPTS):
                code = generate_transaction_code(kind)
                inserted = conn.execute(
                    """INSERT INTO transactions
                       (transaction_code, user_id, chat_id, amount, type, content_id,
                        start_ep, end_ep, payment_method, status)
                       VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, 'pending')
                       ON CONFLICT (transaction_code) DO NOTHING""",
                    (
                        code, user_id, chat_id, amount, kind.value, content_id,
                        start, end, PAYMENT_METHOD_MPESA,
                    ),
                ).rowcount
                if inserted:
                    break
                logger.warning("Transaction code collision on %s, regenerating", code)
            else:
                raise RuntimeError("could not generate a unique transaction code")
        logger.info(
            "Transaction created: %s kind=%s content=%s amount=%s",
            code, kind.value, content_id, amount,
        )
        return code

    def find_by_code(self, code: str) -> Transaction | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE transaction_code = %s", (code,)
            ).fetchone()
        return _transaction(row) if row else None

    def find_by_reference(self, provider_reference: str) -> Transaction | None:
        if not provider_reference:
            return None
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE provider_reference = %s",
                (provider_reference,),
            ).fetchone()
        return _transaction(row) if row else None

    def attach_reference(self, code: str, provider_reference: str) -> bool:
        with self._get_conn() as conn:
            updated = conn.execute(
                """UPDATE transactions
                   SET provider_reference = %s, updated_at = NOW()
                   WHERE transaction_code = %s""",
                (provider_reference, code),
            ).rowcount
        return updated > 0

    def mark_terminal(
        self,
        code: str,
        status: TransactionStatus,
        receipt_number: str | None = None,
    ) -> bool:
        if not status.is_terminal:
            raise ValueError(f"not a terminal status: {status}")
        with self._get_conn() as conn:
            updated = conn.execute(
                """UPDATE transactions
                   SET status = %s,
                       receipt_number = COALESCE(%s, receipt_number),
                       updated_at = NOW()
                   WHERE transaction_code = %s AND status = 'pending'""",
                (status.value, receipt_number, code),
            ).rowcount
        if updated:
            logger.info("Transaction %s -> %s", code, status.value)
        return updated > 0

    def list_for_user(self, user_id: str, limit: int = 10) -> list[Transaction]:
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT * FROM transactions
                   WHERE user_id = %s
                   ORDER BY created_at DESC LIMIT %s""",
                (user_id, limit),
            ).fetchall()
        return [_transaction(r) for r in rows]

    def list_pending(self, limit: int = 100, *, with_reference: bool = False) -> list[Transaction]:
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT * FROM transactions
                   WHERE status = 'pending'
                     AND (provider_reference IS NOT NULL OR NOT %s)
                   ORDER BY created_at LIMIT %s""",
                (with_reference, limit),
            ).fetchall()
        return [_transaction(r) for r in rows]
