"""Sequential conjugate updating of team posteriors."""

from __future__ import annotations

import datetime as dt
import math

import pytest
from hypothesis import given, settings, strategies as st

from conftest import AWAY_LABEL, HOME_LABEL, NOW, make_posterior

from hooplatent.engine.bayes import (
    ContextMultipliers,
    GameObservation,
    OpponentAdjustment,
    SequentialBayesianUpdater,
    SurprisePolicy,
    confidence_for,
    conjugate_update,
    cross_entropy,
)
from hooplatent.engine.schemas import GameContext
from hooplatent.engine.seasons import SeasonTransitionManager

UNIFORM = (0.125,) * 8


def _observation(
    team_id: str = "DUKE",
    *,
    predicted=UNIFORM,
    actual=HOME_LABEL,
    game_date: dt.date = dt.date(2024, 11, 20),
    context: GameContext | None = None,
    won: bool | None = True,
    point_differential: float | None = 8.0,
) -> GameObservation:
    return GameObservation(
        team_id=team_id,
        opponent_id="UNC",
        game_id="g1",
        game_date=game_date,
        predicted=tuple(predicted),
        actual=tuple(actual),
        context=context or GameContext(),
        won=won,
        point_differential=point_differential,
    )


class TestConjugateUpdate:
    def test_equal_precisions_average(self) -> None:
        mu, sigma = conjugate_update([0.0], [1.0], [1.0], [1.0], min_uncertainty=0.01)
        assert mu[0] == pytest.approx(0.5)
        assert sigma[0] == pytest.approx(math.sqrt(0.5))

    def test_sigma_floor(self) -> None:
        _, sigma = conjugate_update([0.0], [0.1], [0.0], [0.1], min_uncertainty=0.1)
        assert sigma[0] == 0.1

    def test_dimension_mismatch(self) -> None:
        with pytest.raises(ValueError):
            conjugate_update([0.0, 1.0], [1.0], [0.0], [1.0])

    @settings(max_examples=200)
    @given(
        prior_sigma=st.floats(min_value=0.1, max_value=2.0),
        obs_sigma=st.floats(min_value=0.1, max_value=2.0),
        prior_mu=st.floats(min_value=-5, max_value=5),
        obs_mu=st.floats(min_value=-5, max_value=5),
    )
    def test_posterior_precision_never_decreases(
        self, prior_sigma: float, obs_sigma: float, prior_mu: float, obs_mu: float
    ) -> None:
        mu, sigma = conjugate_update(
            [prior_mu], [prior_sigma], [obs_mu], [obs_sigma], min_uncertainty=0.0001
        )
        assert 1.0 / sigma[0] ** 2 >= 1.0 / prior_sigma**2 - 1e-9
        assert sigma[0] <= prior_sigma + 1e-12
        assert min(prior_mu, obs_mu) - 1e-9 <= mu[0] <= max(prior_mu, obs_mu) + 1e-9


class TestPolicies:
    def test_confidence_curve(self) -> None:
        assert confidence_for(0) == 0.0
        assert confidence_for(20) == pytest.approx(0.8 * (1 - math.exp(-3)))
        assert confidence_for(1000) == pytest.approx(0.8)

    def test_context_multipliers_compound(self) -> None:
        context = GameContext(neutral_site=True, conference_game=False, rest_days=1, postseason=True)
        assert ContextMultipliers().factor(context) == pytest.approx(1.2 * 1.1 * 1.15 * 0.9)
        assert ContextMultipliers().factor(GameContext()) == 1.0

    def test_no_opponent_means_no_surprise_scaling(self) -> None:
        assert SurprisePolicy().multiplier(None, won=True, point_differential=30, initial_uncertainty=1.0) == 1.0

    def test_surprising_result_widens(self) -> None:
        strong = make_posterior("UNC", mu=2.0, sigma=1.0)
        policy = SurprisePolicy()
        # expected -0.6, actual tanh(1.5): surprise well above threshold
        multiplier = policy.multiplier(
            strong, won=True, point_differential=30, initial_uncertainty=1.0
        )
        surprise = abs(math.tanh(1.5) + 0.6)
        assert multiplier == pytest.approx(min(2.0, (1 + 0.5 * surprise) * 1.2))

    def test_expected_result_against_known_opponent_tightens(self) -> None:
        known = make_posterior("UNC", mu=0.0, sigma=0.2)
        multiplier = SurprisePolicy().multiplier(
            known, won=None, point_differential=None, initial_uncertainty=1.0
        )
        assert multiplier == pytest.approx(0.8)

    def test_multiplier_bounds(self) -> None:
        policy = SurprisePolicy(min_multiplier=0.9, max_multiplier=1.1)
        strong = make_posterior("UNC", mu=3.0)
        assert policy.multiplier(strong, won=True, point_differential=40, initial_uncertainty=1.0) == 1.1

    def test_opponent_shift_is_bounded(self) -> None:
        adjustment = OpponentAdjustment()
        strong = make_posterior("UNC", mu=5.0, games=10)
        assert adjustment.shift(strong, won=True, point_differential=40) == pytest.approx(0.1)
        assert adjustment.shift(strong, won=None, point_differential=None) == 0.0
        assert OpponentAdjustment(enabled=False).shift(strong, won=True, point_differential=5) == 0.0


class TestSequentialBayesianUpdater:
    def test_cold_start(self) -> None:
        updater = SequentialBayesianUpdater(opponent_adjustment=OpponentAdjustment(enabled=False))
        result = updater.update(None, _observation(), now=NOW)
        posterior = result.posterior
        assert posterior.games_processed == 1
        assert all(value < 1.0 for value in posterior.sigma)
        assert all(value > 0.0 for value in posterior.mu)
        assert posterior.confidence == pytest.approx(confidence_for(1))
        assert posterior.last_updated == NOW

    def test_posterior_moves_toward_observation(self) -> None:
        updater = SequentialBayesianUpdater()
        prior = make_posterior(mu=0.2, sigma=0.5, games=4)
        result = updater.update(prior, _observation(actual=HOME_LABEL, predicted=AWAY_LABEL))
        observed = result.observation.mean[0]
        assert min(0.2, observed) <= result.posterior.mu[0] <= max(0.2, observed)

    def test_worse_than_expected_moves_mean_down(self) -> None:
        updater = SequentialBayesianUpdater()
        turnovers = (0.1, 0.2, 0.0, 0.2, 0.0, 0.1, 0.0, 0.4)
        result = updater.update(
            make_posterior(), _observation(actual=turnovers, won=False, point_differential=-12)
        )
        assert result.observation.performance_signal < 0
        assert result.posterior.mu[0] < 0

    def test_observation_sigma_decays_with_games(self) -> None:
        updater = SequentialBayesianUpdater()
        observation = _observation()
        early = updater.observation_sigma(make_posterior(games=0), observation)
        late = updater.observation_sigma(make_posterior(games=30), observation)
        assert late < early
        assert late >= updater.min_uncertainty

    def test_down_weighted_observation_is_less_precise(self) -> None:
        updater = SequentialBayesianUpdater()
        prior = make_posterior(games=5)
        full = updater.observation_sigma(prior, _observation())
        partial = updater.observation_sigma(prior, _observation(), weight=0.49)
        assert partial == pytest.approx(full / 0.7)

    def test_opponent_shift_applies_only_to_established_opponents(self) -> None:
        updater = SequentialBayesianUpdater()
        prior = make_posterior(sigma=0.5, games=3)
        fresh = make_posterior("UNC", mu=1.0, games=0)
        established = make_posterior("UNC", mu=1.0, games=5)
        assert updater.update(prior, _observation(), opponent=fresh).opponent_shift == 0.0
        assert updater.update(prior, _observation(), opponent=established).opponent_shift > 0.0

    def test_season_rollover_inflates_before_update(self) -> None:
        updater = SequentialBayesianUpdater(season_manager=SeasonTransitionManager())
        prior = make_posterior(mu=0.5, sigma=0.2, season="2023-24")
        result = updater.update(prior, _observation(game_date=dt.date(2024, 11, 15)))
        assert result.season_transitioned
        assert result.posterior.last_season == "2024-25"
        inflated = math.sqrt(0.04 + 0.25)
        assert inflated == pytest.approx(0.538, abs=1e-3)
        assert all(value <= inflated + 1e-12 for value in result.posterior.sigma)
        assert result.posterior.sigma[0] > 0.2

    def test_unparseable_season_is_skipped(self, caplog) -> None:
        updater = SequentialBayesianUpdater(season_manager=SeasonTransitionManager())
        prior = make_posterior(season="???", games=2)
        result = updater.update(prior, _observation())
        assert not result.season_transitioned
        assert result.posterior.last_season == "???"
        assert result.posterior.games_processed == 3
        assert "Skipping season adjustment" in caplog.text

    def test_wrong_team_rejected(self) -> None:
        with pytest.raises(ValueError):
            SequentialBayesianUpdater().update(make_posterior("UNC"), _observation("DUKE"))

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"min_uncertainty": 0.0},
            {"min_uncertainty": 2.0, "max_uncertainty": 1.0},
            {"initial_uncertainty": 5.0},
            {"uncertainty_decay": 1.5},
        ],
    )
    def test_invalid_configuration(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            SequentialBayesianUpdater(**kwargs)

    def test_cross_entropy_of_perfect_prediction(self) -> None:
        assert cross_entropy([1, 0], [1, 0]) == pytest.approx(0.0)


@st.composite
def _outcome_vectors(draw: st.DrawFn) -> tuple[float, ...]:
    weights = draw(
        st.lists(st.floats(min_value=0.01, max_value=1.0), min_size=8, max_size=8)
    )
    total = math.fsum(weights)
    return tuple(value / total for value in weights)


@settings(max_examples=50, deadline=None)
@given(
    games=st.lists(st.tuples(_outcome_vectors(), _outcome_vectors()), min_size=1, max_size=8)
)
def test_sigma_never_increases_within_a_season(games) -> None:
    updater = SequentialBayesianUpdater(
        context_multipliers=ContextMultipliers(), opponent_adjustment=OpponentAdjustment(enabled=False)
    )
    posterior = make_posterior()
    for predicted, actual in games:
        result = updater.update(posterior, _observation(predicted=predicted, actual=actual))
        assert all(
            after <= before + 1e-12
            for after, before in zip(result.posterior.sigma, posterior.sigma)
        )
        posterior = result.posterior
