"""Tests for the fulfillment dispatcher.

Tests:
- Rendezvous by account reference, then by checkout request id
- Unknown transactions are ignored without ledger mutation
- Duplicate and concurrent callbacks deliver once
- Failed payments notify the user
- Series delivery follows the stored range, ascending
- Legacy rows without a range get the whole series
- One failed item does not stop the rest
- Reconciliation through the status query
"""

from __future__ import annotations

import threading
from decimal import Decimal

from fakes import CHAT_ID, USER_ID, stk_callback

from mediabot.catalog.models import ContentKind, Episode, EpisodeRange
from mediabot.fulfillment.dispatcher import FulfillmentStatus
from mediabot.ledger.models import TransactionStatus
from mediabot.payments.callback import CallbackResult, parse_callback


def _movie(ledger, reference: str | None = None) -> str:
    code = ledger.create_pending(USER_ID, CHAT_ID, Decimal("100"), ContentKind.MOVIE, 1)
    if reference:
        ledger.attach_reference(code, reference)
    return code


def _series(ledger, episode_range: EpisodeRange | None, amount: str = "180") -> str:
    return ledger.create_pending(
        USER_ID, CHAT_ID, Decimal(amount), ContentKind.SERIES, 7, episode_range
    )


def _paid(code: str | None = None, checkout: str = "ws_CO_1") -> CallbackResult:
    return parse_callback(stk_callback(checkout_id=checkout, account_reference=code))


class TestRendezvous:
    def test_by_account_reference(self, dispatcher, ledger):
        code = _movie(ledger)
        outcome = dispatcher.handle(_paid(code))
        assert outcome.status == FulfillmentStatus.DELIVERED
        assert outcome.transaction_code == code
        tx = ledger.find_by_code(code)
        assert tx.status == TransactionStatus.COMPLETED
        assert tx.receipt_number == "NLJ7RT61SV"

    def test_by_checkout_request_id(self, dispatcher, ledger):
        code = _movie(ledger, reference="ws_CO_77")
        outcome = dispatcher.handle(_paid(checkout="ws_CO_77"))
        assert outcome.transaction_code == code

    def test_unknown_reference_falls_back_to_checkout(self, dispatcher, ledger):
        code = _movie(ledger, reference="ws_CO_77")
        outcome = dispatcher.handle(_paid("MOV00000000FFFF", checkout="ws_CO_77"))
        assert outcome.transaction_code == code

    def test_unknown_transaction_ignored(self, dispatcher, ledger, channel):
        code = _movie(ledger)
        outcome = dispatcher.handle(_paid("MOV00000000FFFF", checkout="ws_CO_nobody"))
        assert outcome.status == FulfillmentStatus.UNKNOWN
        assert ledger.find_by_code(code).status == TransactionStatus.PENDING
        assert channel.calls == []


class TestExactlyOnce:
    def test_repeat_callback_is_duplicate(self, dispatcher, ledger, channel):
        code = _movie(ledger)
        dispatcher.handle(_paid(code))
        assert dispatcher.handle(_paid(code)).status == FulfillmentStatus.DUPLICATE
        assert channel.documents == ["file-inception"]

    def test_failure_after_success_ignored(self, dispatcher, ledger):
        code = _movie(ledger)
        dispatcher.handle(_paid(code))
        failed = parse_callback(stk_callback(result_code=1032, account_reference=code))
        assert dispatcher.handle(failed).status == FulfillmentStatus.DUPLICATE
        assert ledger.find_by_code(code).status == TransactionStatus.COMPLETED

    def test_concurrent_callbacks_deliver_once(self, dispatcher, ledger, channel):
        code = _movie(ledger)
        barrier = threading.Barrier(6)
        outcomes = []

        def deliver():
            barrier.wait()
            outcomes.append(dispatcher.handle(_paid(code)).status)

        threads = [threading.Thread(target=deliver) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert outcomes.count(FulfillmentStatus.DELIVERED) == 1
        assert channel.documents == ["file-inception"]


class TestFailedPayment:
    def test_user_told_and_nothing_delivered(self, dispatcher, ledger, channel):
        code = _movie(ledger)
        result = parse_callback(stk_callback(result_code=1032, account_reference=code))
        outcome = dispatcher.handle(result)
        assert outcome.status == FulfillmentStatus.FAILED
        assert ledger.find_by_code(code).status == TransactionStatus.FAILED
        assert channel.documents == []
        assert "was not completed" in channel.texts[-1]
        assert "Request cancelled by user" in channel.texts[-1]


class TestSeriesDelivery:
    def test_stored_range_with_gap(self, dispatcher, ledger, channel):
        code = _series(ledger, EpisodeRange(1, 4))
        outcome = dispatcher.handle(_paid(code))
        assert channel.documents == ["file-bb-1", "file-bb-2", "file-bb-4"]
        assert outcome.delivered == 3
        assert channel.of("document")[2]["caption"] == "📺 Breaking Bad - Episode 4"

    def test_subrange(self, dispatcher, ledger, channel):
        code = _series(ledger, EpisodeRange(2, 4), "130")
        dispatcher.handle(_paid(code))
        assert channel.documents == ["file-bb-2", "file-bb-4"]

    def test_legacy_row_gets_full_series(self, dispatcher, ledger, channel, catalog):
        catalog.add_episode(Episode(75, 7, 5, Decimal("80"), "file-bb-5"))
        code = _series(ledger, None)
        dispatcher.handle(_paid(code))
        assert channel.documents == ["file-bb-1", "file-bb-2", "file-bb-4", "file-bb-5"]

    def test_one_failed_item_does_not_stop_delivery(self, dispatcher, ledger, channel):
        channel.failing_documents.add("file-bb-2")
        code = _series(ledger, EpisodeRange(1, 4))
        outcome = dispatcher.handle(_paid(code))
        assert channel.documents == ["file-bb-1", "file-bb-2", "file-bb-4"]
        assert (outcome.delivered, outcome.failed) == (2, 1)
        assert ledger.find_by_code(code).status == TransactionStatus.COMPLETED
        assert code in channel.texts[-1]

    def test_content_removed_after_payment(self, dispatcher, ledger, channel, catalog):
        code = _movie(ledger)
        catalog.remove_movie(1)
        outcome = dispatcher.handle(_paid(code))
        assert outcome.status == FulfillmentStatus.DELIVERED
        assert outcome.delivered == 0
        assert "contact support" in channel.texts[-1]


class TestReconcile:
    def test_settles_from_status_query(self, dispatcher, ledger, gateway, channel):
        code = _movie(ledger, reference="ws_CO_9")
        gateway.status = CallbackResult(checkout_request_id="ws_CO_9", succeeded=True, result_code=0)
        outcome = dispatcher.reconcile(ledger.find_by_code(code))
        assert outcome.status == FulfillmentStatus.DELIVERED
        assert gateway.queried == ["ws_CO_9"]
        assert channel.documents == ["file-inception"]

    def test_still_processing(self, dispatcher, ledger, gateway):
        code = _movie(ledger, reference="ws_CO_9")
        assert dispatcher.reconcile(ledger.find_by_code(code)) is None
        assert ledger.find_by_code(code).status == TransactionStatus.PENDING

    def test_skips_transactions_without_reference(self, dispatcher, ledger, gateway):
        code = _movie(ledger)
        assert dispatcher.reconcile(ledger.find_by_code(code)) is None
        assert gateway.queried == []

    def test_reconcile_pending_counts_settled(self, dispatcher, ledger, gateway):
        _movie(ledger, reference="ws_CO_9")
        _movie(ledger)
        gateway.status = CallbackResult(checkout_request_id="ws_CO_9", succeeded=False, result_code=1037)
        assert dispatcher.reconcile_pending() == 1

    def test_unsent_purchases_do_not_starve_the_sweep(self, dispatcher, ledger, gateway):
        for _ in range(5):
            _movie(ledger)
        code = _movie(ledger, reference="ws_CO_9")
        gateway.status = CallbackResult(checkout_request_id="ws_CO_9", succeeded=True, result_code=0)
        assert dispatcher.reconcile_pending(limit=3) == 1
        assert gateway.queried == ["ws_CO_9"]
        assert ledger.find_by_code(code).status == TransactionStatus.COMPLETED
