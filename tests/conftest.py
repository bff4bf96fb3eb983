"""Shared fixtures for the mediabot test suite.

Everything runs against the in-memory stores, a recording channel and a
scripted payment gateway; no network, database or Redis is touched.
"""

from __future__ import annotations

from decimal import Decimal

import pytest
from fakes import RecordingChannel, ScriptedGateway

from mediabot.catalog.models import Episode, Movie, Series
from mediabot.catalog.store import InMemoryCatalog, InMemoryUserDirectory
from mediabot.conversation.engine import ConversationEngine
from mediabot.fulfillment.dispatcher import FulfillmentDispatcher
from mediabot.ledger.store import InMemoryLedger
from mediabot.sessions.store import SessionStore


@pytest.fixture
def catalog() -> InMemoryCatalog:
    c = InMemoryCatalog()
    c.add_movie(Movie(1, "Inception", Decimal("100"), "file-inception", "thumb-inception"))
    c.add_movie(Movie(2, "Interstellar", Decimal("120"), "file-interstellar"))
    c.add_series(
        Series(7, "Breaking Bad", "thumb-bb"),
        [
            Episode(71, 7, 1, Decimal("50"), "file-bb-1"),
            Episode(72, 7, 2, Decimal("60"), "file-bb-2"),
            Episode(74, 7, 4, Decimal("70"), "file-bb-4"),
        ],
    )
    return c


@pytest.fixture
def users() -> InMemoryUserDirectory:
    return InMemoryUserDirectory()


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def sessions() -> SessionStore:
    return SessionStore(idle_ttl_seconds=1800)


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
def engine(sessions, catalog, users, ledger, gateway, channel) -> ConversationEngine:
    return ConversationEngine(
        sessions, catalog, users, ledger, gateway, channel, welcome_message="Karibu!"
    )


@pytest.fixture
def dispatcher(ledger, catalog, channel, gateway) -> FulfillmentDispatcher:
    return FulfillmentDispatcher(ledger, catalog, channel, gateway)
