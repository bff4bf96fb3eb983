"""Postgres-backed catalog and user directory.

Reads the tables maintained by the admin panel:

    movies   (id, title, thumbnail, file_id, cost)
    series   (id, title, thumbnail)
    episodes (id, series_id, episode_number, file_id, poster, cost)
             UNIQUE (series_id, episode_number), ON DELETE CASCADE from series
    users    (id, telegram_id UNIQUE, first_name, is_active)

Schema creation is owned by the admin tooling, not by this module.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

import psycopg
from psycopg.rows import dict_row

from mediabot.catalog.models import ContentKind, Episode, Movie, Series, User
from mediabot.catalog.store import MAX_SEARCH_RESULTS

logger = logging.getLogger(__name__)


def _like_pattern(substring: str) -> str:
    escaped = substring.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _movie(row: dict[str, Any]) -> Movie:
    return Movie(
        id=row["id"],
        title=row["title"],
        price=Decimal(row["cost"]),
        file_id=row["file_id"],
        thumbnail=row.get("thumbnail") or "",
    )


def _series(row: dict[str, Any]) -> Series:
    return Series(id=row["id"], title=row["title"], thumbnail=row.get("thumbnail") or "")


def _episode(row: dict[str, Any]) -> Episode:
    return Episode(
        id=row["id"],
        series_id=row["series_id"],
        episode_number=row["episode_number"],
        price=Decimal(row["cost"]),
        file_id=row["file_id"],
        poster=row.get("poster") or "",
    )


class PostgresCatalog:
    """CatalogStore over the admin-managed Postgres tables."""

    def __init__(self, database_url: str):
        self._database_url = database_url

    def _get_conn(self) -> psycopg.Connection:
        return psycopg.connect(self._database_url, autocommit=True, row_factory=dict_row)

    def find_items_by_title(
        self, kind: ContentKind, substring: str, limit: int = MAX_SEARCH_RESULTS
    ) -> list:
        if not substring.strip():
            return []
        table = "movies" if kind == ContentKind.MOVIE else "series"
        with self._get_conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM {table} WHERE title ILIKE %s ORDER BY id LIMIT %s",
                (_like_pattern(substring.strip()), limit),
            ).fetchall()
        convert = _movie if kind == ContentKind.MOVIE else _series
        return [convert(r) for r in rows]

    def find_by_id(self, kind: ContentKind, item_id: int) -> Movie | Series | None:
        table = "movies" if kind == ContentKind.MOVIE else "series"
        with self._get_conn() as conn:
            row = conn.execute(f"SELECT * FROM {table} WHERE id = %s", (item_id,)).fetchone()
        if row is None:
            return None
        return _movie(row) if kind == ContentKind.MOVIE else _series(row)

    def find_episodes_in_range(self, series_id: int, start: int, end: int) -> list[Episode]:
        with self._get_conn() as conn:
            rows = conn.execute(
                """SELECT * FROM episodes
                   WHERE series_id = %s AND episode_number BETWEEN %s AND %s
                   ORDER BY episode_number""",
                (series_id, start, end),
            ).fetchall()
        return [_episode(r) for r in rows]

    def list_episodes(self, series_id: int) -> list[Episode]:
        with self._get_conn() as conn:
            rows = conn.execute(
                "SELECT * FROM episodes WHERE series_id = %s ORDER BY episode_number",
                (series_id,),
            ).fetchall()
        return [_episode(r) for r in rows]


class PostgresUserDirectory:
    """UserDirectory over the ``users`` table."""

    def __init__(self, database_url: str):
        self._database_url = database_url

    def _get_conn(self) -> psycopg.Connection:
        return psycopg.connect(self._database_url, autocommit=True, row_factory=dict_row)

    def find_or_create(self, user_id: str, display_name: str = "") -> User:
        with self._get_conn() as conn:
            created = conn.execute(
                """INSERT INTO users (telegram_id, first_name, is_active)
                   VALUES (%s, %s, TRUE)
                   ON CONFLICT (telegram_id) DO NOTHING""",
                (user_id, display_name or None),
            ).rowcount
            row = conn.execute(
                "SELECT telegram_id, first_name, is_active FROM users WHERE telegram_id = %s",
                (user_id,),
            ).fetchone()
        if created:
            logger.info("New user registered: %s", user_id)
        return User(
            user_id=str(row["telegram_id"]),
            display_name=row.get("first_name") or "",
            is_active=bool(row["is_active"]),
        )

    def find(self, user_id: str) -> User | None:
        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT telegram_id, first_name, is_active FROM users WHERE telegram_id = %s",
                (user_id,),
            ).fetchone()
        if row is None:
            return None
        return User(
            user_id=str(row["telegram_id"]),
            display_name=row.get("first_name") or "",
            is_active=bool(row["is_active"]),
        )
