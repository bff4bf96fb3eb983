"""Tests for catalog models, in-memory stores and the Postgres adapters.

Tests:
- EpisodeRange parsing and bounds
- Title search (case-insensitive substring, result cap)
- Episode range lookups and series cascade delete
- User directory find_or_create
- Postgres adapters issue the expected queries (psycopg mocked)
"""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from hypothesis import given
from hypothesis import strategies as st

from mediabot.catalog.models import ContentKind, Episode, EpisodeRange, Movie, Series
from mediabot.catalog.postgres import PostgresCatalog, PostgresUserDirectory
from mediabot.catalog.store import InMemoryCatalog, InMemoryUserDirectory
from mediabot.errors import ValidationError


# ── EpisodeRange ──────────────────────────────────────────────────────────


class TestEpisodeRange:
    """Parsing of "N" and "N-M"."""

    def test_single_episode(self):
        assert EpisodeRange.parse("3") == EpisodeRange(3, 3)

    def test_range(self):
        assert EpisodeRange.parse("1-4") == EpisodeRange(1, 4)

    def test_spaces_tolerated(self):
        assert EpisodeRange.parse(" 2 - 5 ") == EpisodeRange(2, 5)

    @pytest.mark.parametrize("text", ["", "abc", "1-", "-3", "1-2-3", "1..4", "one"])
    def test_malformed_rejected(self, text):
        with pytest.raises(ValidationError) as exc:
            EpisodeRange.parse(text)
        assert "format" in exc.value.user_message

    def test_non_ascii_digits_rejected(self):
        with pytest.raises(ValidationError):
            EpisodeRange.parse("\u0661-\u0664")

    def test_zero_rejected(self):
        with pytest.raises(ValidationError):
            EpisodeRange.parse("0-3")

    @given(st.integers(min_value=1, max_value=10_000), st.integers(min_value=1, max_value=10_000))
    def test_reversed_always_rejected(self, a, b):
        start, end = max(a, b), min(a, b)
        if start == end:
            return
        with pytest.raises(ValidationError) as exc:
            EpisodeRange.parse(f"{start}-{end}")
        assert "greater than" in exc.value.user_message

    def test_membership_and_numbers(self):
        r = EpisodeRange(2, 4)
        assert 3 in r
        assert 5 not in r
        assert list(r.numbers()) == [2, 3, 4]
        assert str(r) == "2-4"


# ── In-memory catalog ─────────────────────────────────────────────────────


class TestInMemoryCatalog:
    """Search and lookups."""

    def test_search_is_case_insensitive_substring(self, catalog):
        found = catalog.find_items_by_title(ContentKind.MOVIE, "CEPT")
        assert [m.title for m in found] == ["Inception"]

    def test_search_capped(self):
        c = InMemoryCatalog()
        for i in range(1, 9):
            c.add_movie(Movie(i, f"Star {i}", Decimal("10"), f"f{i}"))
        assert len(c.find_items_by_title(ContentKind.MOVIE, "star", limit=5)) == 5

    def test_blank_search_returns_nothing(self, catalog):
        assert catalog.find_items_by_title(ContentKind.MOVIE, "   ") == []

    def test_series_search(self, catalog):
        found = catalog.find_items_by_title(ContentKind.SERIES, "breaking")
        assert [s.id for s in found] == [7]

    def test_find_by_id(self, catalog):
        assert catalog.find_by_id(ContentKind.MOVIE, 1).title == "Inception"
        assert catalog.find_by_id(ContentKind.SERIES, 7).title == "Breaking Bad"
        assert catalog.find_by_id(ContentKind.MOVIE, 99) is None

    def test_episodes_in_range_skips_missing(self, catalog):
        episodes = catalog.find_episodes_in_range(7, 1, 4)
        assert [e.episode_number for e in episodes] == [1, 2, 4]

    def test_episodes_sorted_when_added_out_of_order(self):
        c = InMemoryCatalog()
        c.add_series(Series(1, "S"))
        c.add_episode(Episode(3, 1, 3, Decimal("1"), "c"))
        c.add_episode(Episode(1, 1, 1, Decimal("1"), "a"))
        assert [e.episode_number for e in c.list_episodes(1)] == [1, 3]

    def test_duplicate_episode_number_rejected(self, catalog):
        with pytest.raises(ValueError):
            catalog.add_episode(Episode(99, 7, 2, Decimal("1"), "dup"))

    def test_remove_series_cascades(self, catalog):
        catalog.remove_series(7)
        assert catalog.find_by_id(ContentKind.SERIES, 7) is None
        assert catalog.list_episodes(7) == []


class TestInMemoryUserDirectory:
    def test_find_or_create_is_idempotent(self):
        users = InMemoryUserDirectory()
        first = users.find_or_create("42", "Amina")
        second = users.find_or_create("42", "Someone Else")
        assert first is second
        assert second.display_name == "Amina"
        assert second.is_active

    def test_find_unknown(self):
        assert InMemoryUserDirectory().find("nope") is None

    def test_deactivate(self):
        users = InMemoryUserDirectory()
        users.find_or_create("42")
        assert users.deactivate("42") is True
        assert users.find("42").is_active is False
        assert users.deactivate("missing") is False


# ── Postgres adapters ─────────────────────────────────────────────────────


def _mock_conn(fetchone=None, fetchall=None):
    conn = MagicMock()
    conn.__enter__.return_value = conn
    cursor = conn.execute.return_value
    cursor.fetchone.return_value = fetchone
    cursor.fetchall.return_value = fetchall or []
    return conn


class TestPostgresCatalog:
    """Query shape and row mapping (no database)."""

    def test_title_search_escapes_wildcards(self):
        conn = _mock_conn(fetchall=[])
        store = PostgresCatalog("postgresql://test")
        with patch.object(store, "_get_conn", return_value=conn):
            store.find_items_by_title(ContentKind.MOVIE, "100%_real")
        sql, params = conn.execute.call_args[0]
        assert "ILIKE" in sql
        assert params[0] == "%100\\%\\_real%"

    def test_movie_row_mapping(self):
        row = {"id": 1, "title": "Inception", "cost": "100.00", "file_id": "f", "thumbnail": None}
        conn = _mock_conn(fetchone=row)
        store = PostgresCatalog("postgresql://test")
        with patch.object(store, "_get_conn", return_value=conn):
            movie = store.find_by_id(ContentKind.MOVIE, 1)
        assert movie.price == Decimal("100.00")
        assert movie.thumbnail == ""


class TestPostgresUserDirectory:
    def test_find_or_create_inserts_then_reads(self):
        conn = _mock_conn(fetchone={"telegram_id": 42, "first_name": "Amina", "is_active": True})
        users = PostgresUserDirectory("postgresql://test")
        with patch.object(users, "_get_conn", return_value=conn):
            user = users.find_or_create("42", "Amina")
        statements = [c.args[0] for c in conn.execute.call_args_list]
        assert "ON CONFLICT" in statements[0]
        assert statements[1].lstrip().upper().startswith("SELECT")
        assert user.user_id == "42"
