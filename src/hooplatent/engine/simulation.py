"""Possession-level Monte Carlo simulation of full games."""

from __future__ import annotations

import dataclasses
import logging
import math
import time
import warnings
from typing import Dict, Iterable, Mapping, Sequence, Tuple

import numpy as np

from .errors import SimulationDivergence
from .schemas import OFFENSIVE_REBOUND_INDEX, POINTS_BY_OUTCOME, normalize_outcome_vector

logger = logging.getLogger(__name__)

MIN_ITERATIONS = 1_000
_POINTS = np.asarray(POINTS_BY_OUTCOME, dtype=np.int64)


@dataclasses.dataclass(slots=True)
class ProbabilityTriple:
    """Container for win/push/loss probabilities."""

    win: float
    push: float = 0.0

    @property
    def loss(self) -> float:
        return max(0.0, 1.0 - self.win - self.push)


def _distribution(values: np.ndarray) -> Dict[int, float]:
    unique, counts = np.unique(values, return_counts=True)
    total = float(values.size)
    return {int(value): count / total for value, count in zip(unique, counts)}


@dataclasses.dataclass(slots=True)
class SimulationResult:
    home_team: str
    away_team: str
    iterations: int
    possessions: int
    home_win_probability: float
    away_win_probability: float
    tie_probability: float
    margin_mean: float
    margin_variance: float
    expected_home_score: float
    expected_away_score: float
    margin_distribution: Mapping[int, float]
    total_distribution: Mapping[int, float]
    home_score_distribution: Mapping[int, float]
    away_score_distribution: Mapping[int, float]
    seed: int | None = None
    elapsed_seconds: float = 0.0

    @property
    def expected_total(self) -> float:
        return self.expected_home_score + self.expected_away_score

    @property
    def margin_stdev(self) -> float:
        return math.sqrt(self.margin_variance)

    def moneyline_probability(self, team: str) -> float:
        if team in {"home", self.home_team}:
            return self.home_win_probability
        if team in {"away", self.away_team}:
            return self.away_win_probability
        raise KeyError(f"Team {team} not part of simulation {self.home_team} vs {self.away_team}")

    def spread_probability(self, line: float, side: str = "home") -> ProbabilityTriple:
        """Probability that ``side`` covers ``line`` (its own handicap, e.g. -5.5)."""

        sign = 1 if side in {"home", self.home_team} else -1
        if side not in {"home", "away", self.home_team, self.away_team}:
            raise KeyError(f"Unknown side {side}")
        win = push = 0.0
        for margin, probability in self.margin_distribution.items():
            adjusted = sign * margin + line
            if adjusted > 0:
                win += probability
            elif adjusted == 0:
                push += probability
        return ProbabilityTriple(win=win, push=push)

    def total_probability(self, side: str, line: float) -> ProbabilityTriple:
        side_key = side.lower()
        if side_key not in {"over", "under"}:
            raise ValueError("Total side must be 'over' or 'under'")
        win = push = 0.0
        for total, probability in self.total_distribution.items():
            if total == line:
                push += probability
            elif (total > line) == (side_key == "over"):
                win += probability
        return ProbabilityTriple(win=win, push=push)


@dataclasses.dataclass(slots=True, frozen=True)
class AgreementCheck:
    seeds: Tuple[int, ...]
    home_win_probabilities: Tuple[float, ...]
    max_difference: float
    tolerance: float

    @property
    def within_tolerance(self) -> bool:
        return self.max_difference <= self.tolerance


class MonteCarloGameSimulator:
    """Simulate games possession by possession from outcome distributions.

    Each trial gives both teams the same number of possessions.  A
    possession draws once from the offence's 8-way distribution and scores
    that class's points; offensive rebounds and turnovers use up the
    possession without scoring.  ``max_offensive_rebounds`` above zero opts
    into re-drawing after a rebound, up to that many times, within the same
    possession.  The home-court offset is added to the home score as an
    integer part plus a Bernoulli draw on the fractional part.
    """

    def __init__(
        self,
        iterations: int = 10_000,
        *,
        possessions: float = 70,
        home_court_advantage: float = 0.0,
        max_offensive_rebounds: int = 0,
        seed: int | None = None,
        agreement_tolerance: float = 0.02,
        chunk_size: int = 2_000,
    ) -> None:
        if iterations < 1:
            raise ValueError("iterations must be positive")
        if iterations < MIN_ITERATIONS:
            logger.warning(
                "Simulating %d iterations; at least %d are recommended", iterations, MIN_ITERATIONS
            )
        if possessions <= 0:
            raise ValueError("possessions must be positive")
        if max_offensive_rebounds < 0:
            raise ValueError("max_offensive_rebounds must be non-negative")
        self.iterations = int(iterations)
        self.possessions = possessions
        self.home_court_advantage = home_court_advantage
        self.max_offensive_rebounds = int(max_offensive_rebounds)
        self.seed = seed
        self.agreement_tolerance = agreement_tolerance
        self.chunk_size = max(1, int(chunk_size))
        self._rng = np.random.default_rng(seed)

    def _team_points(
        self, rng: np.random.Generator, probabilities: np.ndarray, trials: int, possessions: int
    ) -> np.ndarray:
        if not self.max_offensive_rebounds:
            draws = rng.choice(len(probabilities), size=(trials, possessions), p=probabilities)
            return _POINTS[draws].sum(axis=1)
        draws = rng.choice(
            len(probabilities),
            size=(trials, possessions, self.max_offensive_rebounds + 1),
            p=probabilities,
        )
        terminal = draws != OFFENSIVE_REBOUND_INDEX
        first = np.argmax(terminal, axis=2)
        outcome = np.take_along_axis(draws, first[..., None], axis=2)[..., 0]
        points = np.where(terminal.any(axis=2), _POINTS[outcome], 0)
        return points.sum(axis=1)

    def simulate(
        self,
        home_probabilities: Sequence[float],
        away_probabilities: Sequence[float],
        *,
        home_team: str = "home",
        away_team: str = "away",
        possessions: float | None = None,
        seed: int | None = None,
    ) -> SimulationResult:
        """Run the configured number of trials and aggregate the results."""

        home_p = np.asarray(normalize_outcome_vector(home_probabilities), dtype=np.float64)
        away_p = np.asarray(normalize_outcome_vector(away_probabilities), dtype=np.float64)
        count = int(round(possessions if possessions is not None else self.possessions))
        if count <= 0:
            raise ValueError("possessions must be positive")
        rng = np.random.default_rng(seed) if seed is not None else self._rng
        start = time.perf_counter()

        home_scores = np.empty(self.iterations, dtype=np.int64)
        away_scores = np.empty(self.iterations, dtype=np.int64)
        whole = math.floor(self.home_court_advantage)
        fraction = self.home_court_advantage - whole
        for offset in range(0, self.iterations, self.chunk_size):
            trials = min(self.chunk_size, self.iterations - offset)
            home = self._team_points(rng, home_p, trials, count)
            away = self._team_points(rng, away_p, trials, count)
            if self.home_court_advantage:
                home = home + whole + (rng.random(trials) < fraction)
            home_scores[offset : offset + trials] = home
            away_scores[offset : offset + trials] = away

        margins = home_scores - away_scores
        totals = home_scores + away_scores
        result = SimulationResult(
            home_team=home_team,
            away_team=away_team,
            iterations=self.iterations,
            possessions=count,
            home_win_probability=float(np.mean(margins > 0)),
            away_win_probability=float(np.mean(margins < 0)),
            tie_probability=float(np.mean(margins == 0)),
            margin_mean=float(np.mean(margins)),
            margin_variance=float(np.var(margins)),
            expected_home_score=float(np.mean(home_scores)),
            expected_away_score=float(np.mean(away_scores)),
            margin_distribution=_distribution(margins),
            total_distribution=_distribution(totals),
            home_score_distribution=_distribution(home_scores),
            away_score_distribution=_distribution(away_scores),
            seed=seed if seed is not None else self.seed,
            elapsed_seconds=time.perf_counter() - start,
        )
        logger.info(
            "Simulated %s vs %s over %d trials: home win %.3f, margin %.2f, total %.1f",
            home_team,
            away_team,
            self.iterations,
            result.home_win_probability,
            result.margin_mean,
            result.expected_total,
        )
        return result

    def simulate_many(
        self,
        fixtures: Iterable[Tuple[str, str, Sequence[float], Sequence[float]]],
    ) -> list[SimulationResult]:
        return [
            self.simulate(home_p, away_p, home_team=home, away_team=away)
            for home, away, home_p, away_p in fixtures
        ]

    def check_agreement(
        self,
        home_probabilities: Sequence[float],
        away_probabilities: Sequence[float],
        *,
        seeds: Sequence[int] = (11, 29),
        possessions: float | None = None,
    ) -> AgreementCheck:
        """Run the same matchup under several seeds and compare win probabilities.

        Disagreement beyond ``agreement_tolerance`` emits a
        :class:`SimulationDivergence` warning; it never raises.
        """

        if len(seeds) < 2:
            raise ValueError("At least two seeds are required for an agreement check")
        estimates = tuple(
            self.simulate(
                home_probabilities, away_probabilities, possessions=possessions, seed=seed
            ).home_win_probability
            for seed in seeds
        )
        check = AgreementCheck(
            seeds=tuple(seeds),
            home_win_probabilities=estimates,
            max_difference=max(estimates) - min(estimates),
            tolerance=self.agreement_tolerance,
        )
        if not check.within_tolerance:
            message = (
                f"Home win probability varied by {check.max_difference:.4f} across seeds "
                f"{list(seeds)} (tolerance {self.agreement_tolerance})"
            )
            logger.warning("%s", message)
            warnings.warn(message, SimulationDivergence, stacklevel=2)
        return check


__all__ = [
    "AgreementCheck",
    "MIN_ITERATIONS",
    "MonteCarloGameSimulator",
    "ProbabilityTriple",
    "SimulationResult",
]
