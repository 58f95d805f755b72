from __future__ import annotations

import datetime as dt
from pathlib import Path
from typing import Sequence

import pytest

from hooplatent.engine.bayes import SequentialBayesianUpdater
from hooplatent.engine.cache import TTLCache
from hooplatent.engine.outcome import OutcomeTransitionModel
from hooplatent.engine.pipeline import OnlineLearningPipeline
from hooplatent.engine.schemas import GameLabel, TeamPosterior
from hooplatent.engine.seasons import SeasonTransitionManager
from hooplatent.engine.simulation import MonteCarloGameSimulator
from hooplatent.engine.store import PosteriorStore


HOME_LABEL = (0.30, 0.20, 0.12, 0.18, 0.06, 0.02, 0.04, 0.08)
AWAY_LABEL = (0.25, 0.25, 0.10, 0.20, 0.05, 0.03, 0.04, 0.08)
NOW = dt.datetime(2024, 12, 1, 12, tzinfo=dt.timezone.utc)


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_label(
    game_id: str = "g1",
    home: str = "DUKE",
    away: str = "UNC",
    *,
    game_date: dt.date = dt.date(2024, 11, 15),
    home_probs: Sequence[float] = HOME_LABEL,
    away_probs: Sequence[float] = AWAY_LABEL,
    home_score: int | None = 78,
    away_score: int | None = 70,
) -> GameLabel:
    return GameLabel(
        game_id=game_id,
        home_team_id=home,
        away_team_id=away,
        transition_probs_home=tuple(home_probs),
        transition_probs_away=tuple(away_probs),
        game_date=game_date,
        home_score=home_score,
        away_score=away_score,
    )


def make_posterior(
    team_id: str = "DUKE",
    *,
    mu: float = 0.0,
    sigma: float = 1.0,
    games: int = 0,
    season: str | None = None,
    dim: int = 16,
) -> TeamPosterior:
    return TeamPosterior(
        team_id=team_id,
        mu=(mu,) * dim,
        sigma=(sigma,) * dim,
        games_processed=games,
        last_season=season,
        last_updated=NOW,
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(tmp_path: Path, clock: FakeClock) -> PosteriorStore:
    return PosteriorStore(
        tmp_path / "posteriors.sqlite3",
        cache=TTLCache(ttl_seconds=60, capacity=16, clock=clock),
    )


@pytest.fixture()
def season_manager() -> SeasonTransitionManager:
    return SeasonTransitionManager()


@pytest.fixture()
def updater(season_manager: SeasonTransitionManager) -> SequentialBayesianUpdater:
    return SequentialBayesianUpdater(season_manager=season_manager)


@pytest.fixture()
def outcome_model() -> OutcomeTransitionModel:
    return OutcomeTransitionModel(hidden_dims=(16,), seed=3)


@pytest.fixture()
def simulator() -> MonteCarloGameSimulator:
    return MonteCarloGameSimulator(2_000, seed=5)


@pytest.fixture()
def pipeline(
    store: PosteriorStore,
    updater: SequentialBayesianUpdater,
    outcome_model: OutcomeTransitionModel,
    simulator: MonteCarloGameSimulator,
) -> OnlineLearningPipeline:
    return OnlineLearningPipeline(
        store=store,
        updater=updater,
        outcome_model=outcome_model,
        simulator=simulator,
        sleep=lambda _: None,
    )
