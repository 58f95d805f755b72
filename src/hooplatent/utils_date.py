"""Date utility functions for hooplatent.

Basketball seasons straddle the new year, so a season is labelled by its
start year and the two-digit end year (``"2024-25"``).  How a calendar date
maps onto a season is a league convention, so it is expressed as a
strategy object that can be swapped through configuration.
"""

from __future__ import annotations

import re
from datetime import date
from typing import Callable, Dict, Protocol, runtime_checkable

_SEASON_PATTERN = re.compile(r"^\s*(\d{4})(?:\s*[-/]\s*(\d{2}|\d{4}))?\s*$")


def format_season(start_year: int) -> str:
    """Return the canonical label for the season starting in ``start_year``."""
    if start_year < 1000 or start_year > 9998:
        raise ValueError(f"Season start year out of range: {start_year}")
    return f"{start_year}-{(start_year + 1) % 100:02d}"


def parse_season_start(label: str) -> int:
    """
    Extract the start year from a season label.

    Accepts ``"2024-25"``, ``"2024-2025"`` and the single-year ``"2024"``.

    Raises:
        ValueError: if the label is not a recognisable season.
    """
    if not isinstance(label, str):
        raise ValueError(f"Season label must be a string, got {type(label).__name__}")
    match = _SEASON_PATTERN.match(label)
    if not match:
        raise ValueError(f"Unrecognised season label: {label!r}")
    start = int(match.group(1))
    end = match.group(2)
    if end is not None:
        end_year = int(end) if len(end) == 4 else (start + 1) // 100 * 100 + int(end)
        if end_year != start + 1:
            raise ValueError(f"Season label {label!r} does not span consecutive years")
    return start


def seasons_between(later: str, earlier: str) -> int:
    """Number of seasons separating ``earlier`` from ``later`` (may be negative)."""
    return parse_season_start(later) - parse_season_start(earlier)


@runtime_checkable
class SeasonStrategy(Protocol):
    """Maps calendar dates onto season labels."""

    def season_of(self, day: date) -> str:
        """Return the season label a game played on ``day`` belongs to."""

    def start_year(self, label: str) -> int:
        """Return the start year encoded in ``label``."""


class MonthBoundarySeason:
    """Season rolls over on the first day of ``start_month``.

    With the default of November, games from November onward belong to the
    season starting that year and everything earlier in the calendar year
    belongs to the previous season.
    """

    def __init__(self, start_month: int = 11) -> None:
        if not 1 <= start_month <= 12:
            raise ValueError(f"start_month must be within 1..12, got {start_month}")
        self.start_month = start_month

    def season_of(self, day: date) -> str:
        year = day.year if day.month >= self.start_month else day.year - 1
        return format_season(year)

    def start_year(self, label: str) -> int:
        return parse_season_start(label)


class CalendarYearSeason:
    """Season equals the calendar year; labels are the bare year."""

    def season_of(self, day: date) -> str:
        return str(day.year)

    def start_year(self, label: str) -> int:
        return parse_season_start(label)


SEASON_STRATEGIES: Dict[str, Callable[..., SeasonStrategy]] = {
    "month": MonthBoundarySeason,
    "calendar": CalendarYearSeason,
}


def get_season_strategy(name: str = "month", **kwargs) -> SeasonStrategy:
    """Instantiate a registered season strategy by name."""
    factory = SEASON_STRATEGIES.get(name.lower())
    if factory is None:
        raise ValueError(f"Unknown season strategy: {name}")
    if factory is CalendarYearSeason:
        return factory()
    return factory(**kwargs)


def get_current_season(strategy: SeasonStrategy | None = None) -> str:
    """
    Get the current season label.

    Args:
        strategy: Season strategy to apply, defaults to the November boundary.

    Returns:
        The label of the season in progress today.
    """
    strategy = strategy or MonthBoundarySeason()
    return strategy.season_of(date.today())
