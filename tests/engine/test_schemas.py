"""Data model, persisted schema versions and migration."""

from __future__ import annotations

import datetime as dt
import json
import math

import pytest
from hypothesis import given, strategies as st

from conftest import AWAY_LABEL, HOME_LABEL, NOW, make_label, make_posterior

from hooplatent.engine.errors import InvalidPosteriorFormat
from hooplatent.engine.schemas import (
    BayesianPosteriorV1,
    GameContext,
    GameLabel,
    LegacyPosteriorFormat,
    SeasonTransitionRecord,
    TeamPosterior,
    migrate_posterior,
    normalize_outcome_vector,
    outcome_vector_from_counts,
    parse_posterior_record,
)


@st.composite
def _outcome_counts(draw: st.DrawFn) -> list[float]:
    counts = draw(
        st.lists(
            st.floats(min_value=0.0, max_value=500.0, allow_nan=False, allow_infinity=False),
            min_size=8,
            max_size=8,
        )
    )
    return counts


class TestOutcomeVectors:
    @given(_outcome_counts())
    def test_counts_always_normalise(self, counts: list[float]) -> None:
        vector = outcome_vector_from_counts(counts)
        assert len(vector) == 8
        assert math.fsum(vector) == pytest.approx(1.0, abs=1e-6)
        assert all(value >= 0 for value in vector)

    def test_named_counts(self) -> None:
        vector = outcome_vector_from_counts({"two_point_make": 3, "turnover": 1})
        assert vector[0] == pytest.approx(0.75)
        assert vector[7] == pytest.approx(0.25)

    def test_unknown_class_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unknown outcome classes"):
            outcome_vector_from_counts({"dunk": 1})

    def test_near_normalised_vector_is_renormalised(self) -> None:
        vector = normalize_outcome_vector([0.1250004] * 8)
        assert math.fsum(vector) == pytest.approx(1.0, abs=1e-12)

    @pytest.mark.parametrize(
        "values",
        [[0.2] * 8, [0.5, 0.5, 0, 0, 0, 0, 0], [-0.1, 0.3, 0.2, 0.2, 0.1, 0.1, 0.1, 0.1]],
    )
    def test_invalid_vectors_rejected(self, values: list[float]) -> None:
        with pytest.raises(ValueError):
            normalize_outcome_vector(values)


class TestGameLabel:
    def test_label_vectors_sum_to_one(self) -> None:
        label = make_label()
        assert math.fsum(label.transition_probs_home) == pytest.approx(1.0, abs=1e-6)
        assert math.fsum(label.transition_probs_away) == pytest.approx(1.0, abs=1e-6)

    def test_same_team_rejected(self) -> None:
        with pytest.raises(ValueError, match="same team"):
            make_label(home="DUKE", away="DUKE")

    def test_point_differential_and_context(self) -> None:
        label = GameLabel(
            game_id="g",
            home_team_id="A",
            away_team_id="B",
            transition_probs_home=HOME_LABEL,
            transition_probs_away=AWAY_LABEL,
            game_date="2024-11-20",
            home_score=60,
            away_score=65,
            context=GameContext(neutral_site=True),
            home_rest_days=1,
            away_rest_days=4,
        )
        assert label.game_date == dt.date(2024, 11, 20)
        assert label.point_differential == -5
        away = label.context_for("B")
        assert away.is_home is False
        assert away.rest_days == 4
        assert away.neutral_site is True
        with pytest.raises(KeyError):
            label.context_for("C")

    def test_mark_processed_is_idempotent(self) -> None:
        label = make_label().mark_processed()
        assert label.processed is True
        assert label.mark_processed() is label

    def test_from_mapping_collects_context(self) -> None:
        label = GameLabel.from_mapping(
            {
                "game_id": 17,
                "home_team_id": "A",
                "away_team_id": "B",
                "transition_probs_home": list(HOME_LABEL),
                "transition_probs_away": list(AWAY_LABEL),
                "game_date": dt.date(2025, 3, 20),
                "postseason": True,
                "home_score": None,
            }
        )
        assert label.game_id == "17"
        assert label.context.postseason is True
        assert label.point_differential is None


class TestGameContext:
    def test_vector_defaults_and_scaling(self) -> None:
        vector = GameContext().to_vector()
        assert len(vector) == 10
        assert vector[4] == pytest.approx(2 / 7)
        assert vector[5] == pytest.approx(0.5)
        assert vector[6] == pytest.approx(0.7)
        assert vector[8] == pytest.approx(0.5)

    def test_progress_is_clamped(self) -> None:
        assert GameContext(season_progress=3.0).to_vector()[5] == 1.0


class TestTeamPosterior:
    def test_initial(self) -> None:
        posterior = TeamPosterior.initial("A", initial_uncertainty=1.0, season="2024-25")
        assert posterior.mu == (0.0,) * 16
        assert posterior.sigma == (1.0,) * 16
        assert posterior.games_processed == 0
        assert posterior.last_season == "2024-25"

    @pytest.mark.parametrize(
        "changes",
        [
            {"sigma": (0.0,) * 16},
            {"mu": (math.nan,) * 16},
            {"mu": (0.0,) * 15},
            {"games_processed": -1},
            {"confidence": 1.5},
        ],
    )
    def test_invalid_posteriors_rejected(self, changes: dict) -> None:
        with pytest.raises(ValueError):
            make_posterior().replace(**changes)

    def test_representation_round_trip(self) -> None:
        record = SeasonTransitionRecord("2023-24", "2024-25", NOW, 0.25)
        posterior = make_posterior(mu=0.2, sigma=0.4, games=5, season="2024-25").replace(
            transition_history=(record,), confidence=0.4
        )
        payload = json.loads(json.dumps(posterior.to_representation()))
        assert payload["type"] == "bayesian_posterior"
        assert payload["model_version"] == "v1.0"
        restored = migrate_posterior(parse_posterior_record(payload), team_id="DUKE")
        assert restored == posterior


class TestPersistedSchema:
    def test_legacy_record_migrates_with_clamping(self) -> None:
        record = parse_posterior_record(
            {"mu": [0.1] * 16, "sigma": [0.0] * 8 + [5.0] * 8, "games_processed": 12}
        )
        assert isinstance(record, LegacyPosteriorFormat)
        posterior = migrate_posterior(
            record,
            team_id="A",
            min_uncertainty=0.1,
            max_uncertainty=2.0,
            confidence_fn=lambda games: games / 100,
            now=NOW,
        )
        assert posterior.sigma == (0.1,) * 8 + (2.0,) * 8
        assert posterior.confidence == pytest.approx(0.12)
        assert posterior.last_updated == NOW

    def test_v1_record_parses(self) -> None:
        record = parse_posterior_record(make_posterior().to_representation())
        assert isinstance(record, BayesianPosteriorV1)

    @pytest.mark.parametrize(
        "payload",
        [
            "not json",
            "[1, 2, 3]",
            {"type": "something_else", "mu": [0.0], "sigma": [1.0]},
            {"type": "bayesian_posterior", "mu": [0.0] * 16},
            {"mu": [0.0] * 16, "sigma": [1.0] * 15},
            {"mu": [0.0] * 16, "sigma": [-1.0] * 16},
        ],
    )
    def test_invalid_records_raise(self, payload: object) -> None:
        with pytest.raises(InvalidPosteriorFormat):
            parse_posterior_record(payload)  # type: ignore[arg-type]

    def test_dimension_mismatch_cannot_migrate(self) -> None:
        record = parse_posterior_record({"mu": [0.0] * 4, "sigma": [1.0] * 4})
        with pytest.raises(InvalidPosteriorFormat) as excinfo:
            migrate_posterior(record, team_id="A")
        assert excinfo.value.team_id == "A"
