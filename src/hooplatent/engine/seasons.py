"""Season boundary detection and inter-season uncertainty injection."""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
import math

from ..utils_date import MonthBoundarySeason, SeasonStrategy
from .errors import SeasonTransitionFailure
from .schemas import SeasonTransitionRecord, TeamPosterior, coerce_date, utcnow

logger = logging.getLogger(__name__)


@dataclasses.dataclass(slots=True, frozen=True)
class SeasonAdjustment:
    """Outcome of checking a posterior against a game's season."""

    posterior: TeamPosterior
    game_season: str
    observation_weight: float = 1.0
    transitioned: bool = False


class SeasonTransitionManager:
    """Inflate posterior uncertainty when a team enters a new season.

    The mean is carried over unchanged.  Games from a season older than the
    team's recorded season do not roll the season back; instead their
    observations are down-weighted by ``cross_season_decay ** seasons_ago``.
    """

    def __init__(
        self,
        strategy: SeasonStrategy | None = None,
        *,
        inter_year_variance: float = 0.25,
        cross_season_decay: float = 0.7,
        min_uncertainty: float = 0.1,
        max_uncertainty: float = 2.0,
    ) -> None:
        if inter_year_variance < 0:
            raise ValueError("inter_year_variance must be non-negative")
        if not 0 < cross_season_decay <= 1:
            raise ValueError("cross_season_decay must lie within (0, 1]")
        self.strategy = strategy or MonthBoundarySeason()
        self.inter_year_variance = inter_year_variance
        self.cross_season_decay = cross_season_decay
        self.min_uncertainty = min_uncertainty
        self.max_uncertainty = max_uncertainty

    def season_of(self, game_date: dt.date | dt.datetime | str) -> str:
        try:
            return self.strategy.season_of(coerce_date(game_date))
        except (TypeError, ValueError) as exc:
            raise SeasonTransitionFailure(f"Cannot determine season for {game_date!r}: {exc}") from exc

    def _start_year(self, season: str) -> int:
        try:
            return self.strategy.start_year(season)
        except (TypeError, ValueError) as exc:
            raise SeasonTransitionFailure(f"Unparseable season label {season!r}: {exc}") from exc

    def cross_season_weight(self, current_season: str, game_season: str) -> float:
        seasons_ago = self._start_year(current_season) - self._start_year(game_season)
        if seasons_ago <= 0:
            return 1.0
        return self.cross_season_decay**seasons_ago

    def inflate_sigma(self, sigma: float) -> float:
        inflated = math.sqrt(sigma * sigma + self.inter_year_variance)
        return min(max(inflated, self.min_uncertainty), self.max_uncertainty)

    def apply_transition(
        self,
        posterior: TeamPosterior,
        to_season: str,
        *,
        transition_date: dt.datetime | None = None,
    ) -> TeamPosterior:
        """Return a copy of ``posterior`` carried into ``to_season``."""

        record = SeasonTransitionRecord(
            from_season=posterior.last_season,
            to_season=to_season,
            transition_date=transition_date or utcnow(),
            variance_added=self.inter_year_variance,
        )
        updated = posterior.replace(
            sigma=tuple(self.inflate_sigma(value) for value in posterior.sigma),
            last_season=to_season,
            transition_history=posterior.transition_history + (record,),
        )
        logger.info(
            "Season transition for %s: %s -> %s (variance +%.3f)",
            posterior.team_id,
            posterior.last_season,
            to_season,
            self.inter_year_variance,
        )
        return updated

    def prepare(
        self,
        posterior: TeamPosterior,
        game_date: dt.date | dt.datetime | str,
        *,
        now: dt.datetime | None = None,
    ) -> SeasonAdjustment:
        """Align ``posterior`` with the season of a game about to be processed.

        Raises:
            SeasonTransitionFailure: if the season of either side cannot be
                determined.
        """

        game_season = self.season_of(game_date)
        current = posterior.last_season
        if current is None:
            return SeasonAdjustment(posterior=posterior.replace(last_season=game_season), game_season=game_season)
        if current == game_season:
            return SeasonAdjustment(posterior=posterior, game_season=game_season)
        difference = self._start_year(game_season) - self._start_year(current)
        if difference > 0:
            return SeasonAdjustment(
                posterior=self.apply_transition(posterior, game_season, transition_date=now),
                game_season=game_season,
                transitioned=True,
            )
        weight = self.cross_season_weight(current, game_season)
        logger.debug(
            "Backfilled game for %s from %s while in %s; weight %.3f",
            posterior.team_id,
            game_season,
            current,
            weight,
        )
        return SeasonAdjustment(posterior=posterior, game_season=game_season, observation_weight=weight)


__all__ = ["SeasonAdjustment", "SeasonTransitionManager"]
