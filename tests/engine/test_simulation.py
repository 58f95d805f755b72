"""Possession-level Monte Carlo simulation."""

from __future__ import annotations

import warnings

import pytest

from hooplatent.engine.errors import SimulationDivergence
from hooplatent.engine.schemas import POINTS_BY_OUTCOME
from hooplatent.engine.simulation import MonteCarloGameSimulator, SimulationResult

STRONG = (0.35, 0.15, 0.12, 0.13, 0.08, 0.02, 0.05, 0.10)
WEAK = (0.22, 0.28, 0.06, 0.20, 0.04, 0.04, 0.04, 0.12)
ALWAYS_TWO = (1.0, 0, 0, 0, 0, 0, 0, 0)
ALWAYS_MISS = (0, 1.0, 0, 0, 0, 0, 0, 0)


class TestSimulator:
    def test_deterministic_scores(self) -> None:
        simulator = MonteCarloGameSimulator(1_000, possessions=10, seed=1)
        result = simulator.simulate(ALWAYS_TWO, ALWAYS_MISS, home_team="A", away_team="B")
        assert result.home_win_probability == 1.0
        assert result.expected_home_score == 20
        assert result.expected_away_score == 0
        assert result.margin_distribution == {20: 1.0}
        assert result.total_distribution == {20: 1.0}

    def test_offensive_rebound_is_a_scoreless_possession(self) -> None:
        make_or_rebound = (0.5, 0, 0, 0, 0, 0, 0.5, 0)
        simulator = MonteCarloGameSimulator(10_000, possessions=70, seed=1)
        result = simulator.simulate(make_or_rebound, ALWAYS_MISS)
        assert result.expected_home_score == pytest.approx(70.0, abs=0.5)

    def test_expected_score_matches_points_per_possession(self) -> None:
        simulator = MonteCarloGameSimulator(10_000, possessions=70, seed=5)
        result = simulator.simulate(STRONG, WEAK)
        strong_ppp = sum(p * pts for p, pts in zip(STRONG, POINTS_BY_OUTCOME))
        weak_ppp = sum(p * pts for p, pts in zip(WEAK, POINTS_BY_OUTCOME))
        assert result.expected_home_score == pytest.approx(70 * strong_ppp, abs=0.5)
        assert result.expected_away_score == pytest.approx(70 * weak_ppp, abs=0.5)

    def test_opt_in_rebound_redraws(self) -> None:
        rebound_then_score = (0.5, 0, 0, 0, 0, 0, 0.5, 0)
        simulator = MonteCarloGameSimulator(2_000, possessions=1, seed=3, max_offensive_rebounds=5)
        result = simulator.simulate(rebound_then_score, ALWAYS_MISS)
        # only six rebounds in a row leave the possession scoreless
        assert result.expected_home_score == pytest.approx(2 * (1 - 0.5**6), abs=0.05)

    def test_home_court_offset(self) -> None:
        simulator = MonteCarloGameSimulator(1_000, possessions=5, seed=2, home_court_advantage=3.0)
        result = simulator.simulate(ALWAYS_MISS, ALWAYS_MISS)
        assert result.margin_mean == pytest.approx(3.0)
        assert result.tie_probability == 0.0

    def test_probabilities_partition(self) -> None:
        simulator = MonteCarloGameSimulator(3_000, seed=4)
        result = simulator.simulate(STRONG, WEAK, home_team="A", away_team="B")
        total = result.home_win_probability + result.away_win_probability + result.tie_probability
        assert total == pytest.approx(1.0)
        assert result.home_win_probability > result.away_win_probability
        assert result.moneyline_probability("A") == result.home_win_probability
        assert result.moneyline_probability("away") == result.away_win_probability
        with pytest.raises(KeyError):
            result.moneyline_probability("C")
        assert sum(result.margin_distribution.values()) == pytest.approx(1.0)
        assert result.expected_total == pytest.approx(
            result.expected_home_score + result.expected_away_score
        )

    def test_same_seed_reproduces(self) -> None:
        simulator = MonteCarloGameSimulator(2_000)
        first = simulator.simulate(STRONG, WEAK, seed=17)
        second = simulator.simulate(STRONG, WEAK, seed=17)
        assert first.home_win_probability == second.home_win_probability
        assert first.margin_distribution == second.margin_distribution

    def test_invalid_distribution(self) -> None:
        with pytest.raises(ValueError):
            MonteCarloGameSimulator(1_000).simulate((0.5,) * 8, WEAK)

    def test_low_iteration_warning(self, caplog) -> None:
        MonteCarloGameSimulator(100)
        assert "at least 1000" in caplog.text

    @pytest.mark.parametrize(
        "kwargs",
        [{"iterations": 0}, {"possessions": 0}, {"max_offensive_rebounds": -1}],
    )
    def test_invalid_parameters(self, kwargs: dict) -> None:
        with pytest.raises(ValueError):
            MonteCarloGameSimulator(**kwargs)

    def test_simulate_many(self) -> None:
        simulator = MonteCarloGameSimulator(1_000, possessions=10, seed=9)
        results = simulator.simulate_many([("A", "B", STRONG, WEAK), ("C", "D", WEAK, STRONG)])
        assert [(item.home_team, item.away_team) for item in results] == [("A", "B"), ("C", "D")]


class TestMarkets:
    @pytest.fixture()
    def result(self) -> SimulationResult:
        return SimulationResult(
            home_team="A",
            away_team="B",
            iterations=4,
            possessions=70,
            home_win_probability=0.75,
            away_win_probability=0.25,
            tie_probability=0.0,
            margin_mean=3.0,
            margin_variance=18.5,
            expected_home_score=71.5,
            expected_away_score=68.5,
            margin_distribution={-4: 0.25, 2: 0.25, 5: 0.25, 9: 0.25},
            total_distribution={130: 0.25, 140: 0.25, 141: 0.25, 149: 0.25},
            home_score_distribution={},
            away_score_distribution={},
        )

    def test_spread_home(self, result: SimulationResult) -> None:
        triple = result.spread_probability(-5, side="home")
        assert triple.win == pytest.approx(0.25)
        assert triple.push == pytest.approx(0.25)
        assert triple.loss == pytest.approx(0.5)

    def test_spread_away(self, result: SimulationResult) -> None:
        triple = result.spread_probability(5, side="away")
        assert triple.win == pytest.approx(0.5)
        assert triple.push == pytest.approx(0.25)

    def test_totals(self, result: SimulationResult) -> None:
        over = result.total_probability("over", 140)
        under = result.total_probability("Under", 140)
        assert over.win == pytest.approx(0.5)
        assert under.win == pytest.approx(0.25)
        assert over.push == under.push == pytest.approx(0.25)
        with pytest.raises(ValueError):
            result.total_probability("sideways", 140)

    def test_margin_stdev(self, result: SimulationResult) -> None:
        assert result.margin_stdev == pytest.approx(18.5**0.5)


class TestAgreement:
    def test_independent_seeds_agree(self) -> None:
        simulator = MonteCarloGameSimulator(10_000)
        with warnings.catch_warnings():
            warnings.simplefilter("error", SimulationDivergence)
            check = simulator.check_agreement(STRONG, WEAK, seeds=(11, 29))
        assert check.within_tolerance
        assert abs(check.home_win_probabilities[0] - check.home_win_probabilities[1]) <= 0.02

    def test_divergence_is_a_warning(self) -> None:
        simulator = MonteCarloGameSimulator(1_000, agreement_tolerance=1e-9)
        with pytest.warns(SimulationDivergence):
            check = simulator.check_agreement(STRONG, WEAK, seeds=(1, 2, 3))
        assert not check.within_tolerance

    def test_requires_two_seeds(self) -> None:
        with pytest.raises(ValueError):
            MonteCarloGameSimulator(1_000).check_agreement(STRONG, WEAK, seeds=(1,))
