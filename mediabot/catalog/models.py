"""Catalog and user data models.

Prices are ``Decimal`` throughout; the ledger sums them without float
rounding.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from mediabot.errors import ValidationError


class ContentKind(str, Enum):
    """What a catalog lookup or a transaction refers to."""
    MOVIE = "movie"
    SERIES = "series"


@dataclass
class Movie:
    id: int
    title: str
    price: Decimal
    file_id: str  # deliverable media reference
    thumbnail: str = ""


@dataclass
class Series:
    id: int
    title: str
    thumbnail: str = ""


@dataclass
class Episode:
    id: int
    series_id: int
    episode_number: int
    price: Decimal
    file_id: str
    poster: str = ""


@dataclass
class User:
    """A messaging-platform user, keyed by the platform's user id."""
    user_id: str
    display_name: str = ""
    is_active: bool = True
    metadata: dict = field(default_factory=dict)


_RANGE_PATTERN = re.compile(r"^(\d+)(?:\s*-\s*(\d+))?$", re.ASCII)


@dataclass(frozen=True)
class EpisodeRange:
    """Inclusive episode interval ``[start, end]``."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 1:
            raise ValidationError(f"episode range starts below 1: {self.start}")
        if self.start > self.end:
            raise ValidationError(f"episode range is reversed: {self.start}-{self.end}")

    @classmethod
    def parse(cls, text: str) -> EpisodeRange:
        """Parse ``"N"`` or ``"N-M"``.

        Raises:
            ValidationError: malformed text, zero, or ``N > M``.
        """
        match = _RANGE_PATTERN.match((text or "").strip())
        if not match:
            raise ValidationError(
                f"malformed episode range: {text!r}",
                user_message='Invalid episode range format. Please use a format like "1-5" or just "1".',
            )
        start = int(match.group(1))
        end = int(match.group(2)) if match.group(2) else start
        if start > end:
            raise ValidationError(
                f"reversed episode range: {text!r}",
                user_message="Invalid range. The start episode cannot be greater than the end episode.",
            )
        if start < 1:
            raise ValidationError(
                f"episode range below 1: {text!r}",
                user_message="Episode numbers start at 1. Please enter a range like \"1-5\".",
            )
        return cls(start, end)

    def __contains__(self, episode_number: object) -> bool:
        return isinstance(episode_number, int) and self.start <= episode_number <= self.end

    def numbers(self) -> range:
        return range(self.start, self.end + 1)

    def __str__(self) -> str:
        return f"{self.start}-{self.end}"
