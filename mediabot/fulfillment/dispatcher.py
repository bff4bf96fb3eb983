"""Fulfillment dispatcher — callback rendezvous and exactly-once delivery.

Contract:
- The transaction is resolved by code (AccountReference), else by the
  provider's CheckoutRequestID
- Unknown transactions are logged and ignored; nothing is mutated
- Only the caller whose ledger.mark_terminal() succeeds delivers, so
  duplicate or concurrent callbacks never deliver twice
- Content goes out sequentially, ascending by episode number
- One failed item is logged as a DeliveryError and does not stop the rest
  or revert the completed status
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum

from mediabot.catalog.models import ContentKind, Episode
from mediabot.catalog.store import CatalogStore
from mediabot.channels.protocol import MessagingChannel
from mediabot.errors import DeliveryError, GatewayError
from mediabot.ledger.models import Transaction, TransactionStatus
from mediabot.ledger.store import Ledger
from mediabot.payments.callback import CallbackResult
from mediabot.payments.mpesa import PaymentGateway

logger = logging.getLogger(__name__)


class FulfillmentStatus(str, Enum):
    UNKNOWN = "unknown"  # no transaction matched the callback
    DUPLICATE = "duplicate"  # already terminal, or another callback won the race
    FAILED = "failed"  # payment did not complete
    DELIVERED = "delivered"  # payment completed, delivery attempted


@dataclass
class FulfillmentOutcome:
    status: FulfillmentStatus
    transaction_code: str | None = None
    delivered: int = 0
    failed: int = 0


@dataclass(frozen=True)
class _Deliverable:
    label: str  # for logs, e.g. "episode 3"
    file_id: str
    caption: str


class FulfillmentDispatcher:
    """Turns payment results into ledger updates and content delivery."""

    def __init__(
        self,
        ledger: Ledger,
        catalog: CatalogStore,
        channel: MessagingChannel,
        gateway: PaymentGateway | None = None,
    ):
        self._ledger = ledger
        self._catalog = catalog
        self._channel = channel
        self._gateway = gateway

    def handle(self, result: CallbackResult) -> FulfillmentOutcome:
        """Settle one payment result. Safe to call repeatedly for the same result."""
        tx = self._resolve(result)
        if tx is None:
            logger.warning(
                "Payment result for unknown transaction: code=%s checkout=%s result=%s",
                result.transaction_code, result.checkout_request_id, result.result_code,
            )
            return FulfillmentOutcome(FulfillmentStatus.UNKNOWN, result.transaction_code)

        if tx.status.is_terminal:
            logger.info("Ignoring repeat payment result for %s (already %s)", tx.code, tx.status.value)
            return FulfillmentOutcome(FulfillmentStatus.DUPLICATE, tx.code)

        status = TransactionStatus.COMPLETED if result.succeeded else TransactionStatus.FAILED
        if not self._ledger.mark_terminal(tx.code, status, result.receipt_number):
            logger.info("Transaction %s settled concurrently, skipping", tx.code)
            return FulfillmentOutcome(FulfillmentStatus.DUPLICATE, tx.code)

        if not result.succeeded:
            logger.info(
                "Payment for %s did not complete: %s %s",
                tx.code, result.result_code, result.result_desc,
            )
            self._notify(
                tx.chat_id,
                f"❌ Payment for transaction {tx.code} was not completed"
                f"{': ' + result.result_desc if result.result_desc else '.'}\n\n"
                "To try again, search for the title from the menu and tap Purchase. "
                f"If you were charged, contact support with transaction code {tx.code}.",
            )
            return FulfillmentOutcome(FulfillmentStatus.FAILED, tx.code)

        if result.amount is not None and result.amount < int(tx.amount):
            logger.warning(
                "Paid amount %s below expected %s for %s", result.amount, tx.amount, tx.code
            )
        return self._deliver(tx, result.receipt_number)

    def reconcile(self, transaction: Transaction) -> FulfillmentOutcome | None:
        """Poll the provider for a pending transaction's outcome.

        None when there is nothing to settle yet: no gateway, no provider
        reference, provider unreachable or the customer has not answered.
        """
        if (
            self._gateway is None
            or transaction.status != TransactionStatus.PENDING
            or not transaction.provider_reference
        ):
            return None
        try:
            result = self._gateway.query_status(transaction.provider_reference)
        except GatewayError as e:
            logger.warning("Status query for %s failed: %s", transaction.code, e)
            return None
        if result is None:
            return None
        return self.handle(dataclasses.replace(result, transaction_code=transaction.code))

    def reconcile_pending(self, limit: int = 100) -> int:
        """Reconcile the oldest pending transactions sent to the provider.

        Returns how many settled.
        """
        settled = 0
        for tx in self._ledger.list_pending(limit=limit, with_reference=True):
            outcome = self.reconcile(tx)
            if outcome is not None and outcome.status in (
                FulfillmentStatus.DELIVERED, FulfillmentStatus.FAILED
            ):
                settled += 1
        if settled:
            logger.info("Reconciled %d pending transactions", settled)
        return settled

    # ── Internals ─────────────────────────────────────────────────────────

    def _resolve(self, result: CallbackResult) -> Transaction | None:
        if result.transaction_code:
            tx = self._ledger.find_by_code(result.transaction_code)
            if tx is not None:
                return tx
        return self._ledger.find_by_reference(result.checkout_request_id)

    def _deliver(self, tx: Transaction, receipt_number: str | None) -> FulfillmentOutcome:
        receipt = f" (M-Pesa receipt {receipt_number})" if receipt_number else ""
        self._notify(
            tx.chat_id,
            f"✅ Payment received for transaction {tx.code}{receipt}. Sending your content now...",
        )

        items = self._deliverables(tx)
        if not items:
            logger.error("Transaction %s completed but has no deliverable content", tx.code)
            self._notify(
                tx.chat_id,
                "We received your payment but could not find the content. "
                f"Please contact support with transaction code {tx.code}.",
            )
            return FulfillmentOutcome(FulfillmentStatus.DELIVERED, tx.code)

        delivered = failed = 0
        for item in items:
            try:
                self._send(tx.chat_id, item)
                delivered += 1
            except DeliveryError as e:
                failed += 1
                logger.error("Delivery failed for %s %s: %s", tx.code, e.item, e)

        logger.info(
            "Fulfilled %s: delivered=%d failed=%d", tx.code, delivered, failed
        )
        if failed:
            self._notify(
                tx.chat_id,
                f"{failed} item(s) could not be delivered. Please contact support "
                f"with transaction code {tx.code}.",
            )
        return FulfillmentOutcome(FulfillmentStatus.DELIVERED, tx.code, delivered, failed)

    def _deliverables(self, tx: Transaction) -> list[_Deliverable]:
        item = self._catalog.find_by_id(tx.kind, tx.content_id)
        if tx.kind == ContentKind.MOVIE:
            if item is None:
                return []
            return [_Deliverable(f"movie {item.id}", item.file_id, f"🎬 {item.title}\n\nEnjoy your movie!")]

        if tx.episode_range is not None:
            episodes = self._catalog.find_episodes_in_range(
                tx.content_id, tx.episode_range.start, tx.episode_range.end
            )
        else:
            # Rows written before ranges were stored: deliver the whole series
            logger.warning("Transaction %s has no episode range, delivering full series", tx.code)
            episodes = self._catalog.list_episodes(tx.content_id)
        title = item.title if item is not None else "Your series"
        return [
            _Deliverable(
                f"episode {e.episode_number}",
                e.file_id,
                f"📺 {title} - Episode {e.episode_number}",
            )
            for e in _ascending(episodes)
        ]

    def _send(self, chat_id: str, item: _Deliverable) -> None:
        if not item.file_id:
            raise DeliveryError("no file reference", item=item.label)
        result = self._channel.send_document(chat_id, item.file_id, item.caption)
        if not result.success:
            raise DeliveryError(result.error or "send failed", item=item.label)

    def _notify(self, chat_id: str, text: str) -> None:
        result = self._channel.send_text(chat_id, text)
        if not result.success:
            logger.warning("Notice to chat %s failed: %s", chat_id, result.error)


def _ascending(episodes: list[Episode]) -> list[Episode]:
    return sorted(episodes, key=lambda e: e.episode_number)
