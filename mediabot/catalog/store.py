"""Catalog and user-directory contracts with in-memory implementations.

The conversation engine and the fulfillment dispatcher depend only on the
``CatalogStore`` and ``UserDirectory`` protocols. The in-memory classes back
tests and single-process development runs; ``mediabot.catalog.postgres``
backs production.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol, runtime_checkable

from mediabot.catalog.models import ContentKind, Episode, Movie, Series, User

logger = logging.getLogger(__name__)

MAX_SEARCH_RESULTS = 5


@runtime_checkable
class CatalogStore(Protocol):
    """Read-only access to the priced catalog."""

    def find_items_by_title(
        self, kind: ContentKind, substring: str, limit: int = MAX_SEARCH_RESULTS
    ) -> list[Movie] | list[Series]:
        """Case-insensitive substring match on title."""
        ...

    def find_by_id(self, kind: ContentKind, item_id: int) -> Movie | Series | None:
        ...

    def find_episodes_in_range(self, series_id: int, start: int, end: int) -> list[Episode]:
        """Episodes with ``start <= number <= end``, ascending by number."""
        ...

    def list_episodes(self, series_id: int) -> list[Episode]:
        """All episodes of a series, ascending by number."""
        ...


@runtime_checkable
class UserDirectory(Protocol):
    def find_or_create(self, user_id: str, display_name: str = "") -> User:
        ...

    def find(self, user_id: str) -> User | None:
        ...


class InMemoryCatalog:
    """Dict-backed catalog."""

    def __init__(self) -> None:
        self._movies: dict[int, Movie] = {}
        self._series: dict[int, Series] = {}
        self._episodes: dict[int, list[Episode]] = {}

    def add_movie(self, movie: Movie) -> Movie:
        self._movies[movie.id] = movie
        return movie

    def add_series(self, series: Series, episodes: list[Episode] | None = None) -> Series:
        self._series[series.id] = series
        self._episodes.setdefault(series.id, [])
        for episode in episodes or []:
            self.add_episode(episode)
        return series

    def add_episode(self, episode: Episode) -> Episode:
        existing = self._episodes.setdefault(episode.series_id, [])
        if any(e.episode_number == episode.episode_number for e in existing):
            raise ValueError(
                f"series {episode.series_id} already has episode {episode.episode_number}"
            )
        existing.append(episode)
        existing.sort(key=lambda e: e.episode_number)
        return episode

    def remove_movie(self, movie_id: int) -> None:
        self._movies.pop(movie_id, None)

    def remove_series(self, series_id: int) -> None:
        """Delete a series and, with it, its episodes."""
        self._series.pop(series_id, None)
        self._episodes.pop(series_id, None)

    def find_items_by_title(
        self, kind: ContentKind, substring: str, limit: int = MAX_SEARCH_RESULTS
    ) -> list:
        needle = substring.strip().lower()
        if not needle:
            return []
        pool = self._movies if kind == ContentKind.MOVIE else self._series
        matches = [item for _, item in sorted(pool.items()) if needle in item.title.lower()]
        return matches[:limit]

    def find_by_id(self, kind: ContentKind, item_id: int) -> Movie | Series | None:
        if kind == ContentKind.MOVIE:
            return self._movies.get(item_id)
        return self._series.get(item_id)

    def find_episodes_in_range(self, series_id: int, start: int, end: int) -> list[Episode]:
        return [
            e for e in self._episodes.get(series_id, [])
            if start <= e.episode_number <= end
        ]

    def list_episodes(self, series_id: int) -> list[Episode]:
        return list(self._episodes.get(series_id, []))


class InMemoryUserDirectory:
    """Dict-backed user directory."""

    def __init__(self) -> None:
        self._users: dict[str, User] = {}
        self._lock = threading.Lock()

    def find_or_create(self, user_id: str, display_name: str = "") -> User:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                user = User(user_id=user_id, display_name=display_name)
                self._users[user_id] = user
                logger.info("New user registered: %s", user_id)
            return user

    def find(self, user_id: str) -> User | None:
        return self._users.get(user_id)

    def deactivate(self, user_id: str) -> bool:
        user = self._users.get(user_id)
        if user is None:
            return False
        user.is_active = False
        return True
