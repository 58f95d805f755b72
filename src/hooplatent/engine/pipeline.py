"""Chronological online learning over completed games and pre-game prediction."""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Mapping, Sequence, Tuple

import numpy as np

from .analytics import BettingOdds, ExpectedValueCalculator, Opportunity
from .bayes import GameObservation, SequentialBayesianUpdater, UpdateResult
from .encoder import FrozenEncoder
from .errors import FrozenEncoderViolation, GameProcessingError
from .outcome import OutcomeTransitionModel
from .schemas import GameContext, GameLabel, TeamPosterior
from .simulation import MonteCarloGameSimulator, SimulationResult
from .store import PosteriorStore

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .configuration import EngineConfig

logger = logging.getLogger(__name__)


@dataclasses.dataclass(slots=True, frozen=True)
class FailedGame:
    game_id: str
    attempts: int
    error: str


@dataclasses.dataclass(slots=True)
class ProcessingReport:
    """Outcome of one sequential processing session."""

    processed: List[str] = dataclasses.field(default_factory=list)
    skipped: List[str] = dataclasses.field(default_factory=list)
    failed: List[FailedGame] = dataclasses.field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.failed

    def summary(self) -> Dict[str, Any]:
        return {
            "processed": len(self.processed),
            "skipped": len(self.skipped),
            "failed": len(self.failed),
            "failed_games": [
                {"game_id": item.game_id, "attempts": item.attempts, "error": item.error}
                for item in self.failed
            ],
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclasses.dataclass(slots=True, frozen=True)
class GameUpdate:
    """Everything that changed when one game was absorbed."""

    game_id: str
    home: UpdateResult
    away: UpdateResult
    home_prediction: Tuple[float, ...]
    away_prediction: Tuple[float, ...]
    outcome_loss: float


@dataclasses.dataclass(slots=True)
class GamePrediction:
    home_team: str
    away_team: str
    home_posterior: TeamPosterior
    away_posterior: TeamPosterior
    home_distribution: Tuple[float, ...]
    away_distribution: Tuple[float, ...]
    simulation: SimulationResult
    opportunities: List[Opportunity] = dataclasses.field(default_factory=list)


class OnlineLearningPipeline:
    """Wire the store, updater, outcome model and simulator together.

    Completed games are absorbed one at a time in chronological order.  For
    each game the outcome model predicts both teams' possession outcomes
    from their pre-game posteriors, learns from what actually happened, and
    both posteriors are updated and written together with the game's
    processed marker.  The frozen encoder is only consulted to seed new
    teams and is checked for tampering around every game.
    """

    def __init__(
        self,
        *,
        store: PosteriorStore,
        updater: SequentialBayesianUpdater,
        outcome_model: OutcomeTransitionModel,
        simulator: MonteCarloGameSimulator | None = None,
        ev_calculator: ExpectedValueCalculator | None = None,
        encoder: FrozenEncoder | None = None,
        max_attempts: int = 3,
        backoff_base_seconds: float = 1.0,
        backoff_cap_seconds: float = 10.0,
        continue_on_error: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.updater = updater
        self.outcome_model = outcome_model
        self.simulator = simulator or MonteCarloGameSimulator()
        self.ev_calculator = ev_calculator or ExpectedValueCalculator()
        self.encoder = encoder
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_cap_seconds = backoff_cap_seconds
        self.continue_on_error = continue_on_error
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: "EngineConfig",
        *,
        store: PosteriorStore | None = None,
        encoder: FrozenEncoder | None = None,
        outcome_model: OutcomeTransitionModel | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "OnlineLearningPipeline":
        from .configuration import (
            create_bayesian_updater,
            create_ev_calculator,
            create_outcome_model,
            create_posterior_store,
            create_simulator,
        )

        pipeline = config.pipeline
        return cls(
            store=store or create_posterior_store(config),
            updater=create_bayesian_updater(config),
            outcome_model=outcome_model or create_outcome_model(config),
            simulator=create_simulator(config),
            ev_calculator=create_ev_calculator(config),
            encoder=encoder,
            max_attempts=pipeline.max_attempts,
            backoff_base_seconds=pipeline.backoff_base_seconds,
            backoff_cap_seconds=pipeline.backoff_cap_seconds,
            continue_on_error=pipeline.continue_on_error,
            sleep=sleep,
        )

    # -- helpers -------------------------------------------------------------

    def _check_encoder(self) -> None:
        if self.encoder is not None:
            self.encoder.validate_immutability()

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based), capped."""

        return min(self.backoff_cap_seconds, self.backoff_base_seconds * 2 ** (attempt - 1))

    # -- online learning -----------------------------------------------------

    def process_game(self, label: GameLabel, *, now: dt.datetime | None = None) -> GameUpdate:
        """Absorb one completed game.

        Nothing is persisted unless both teams were updated successfully, and
        a failed attempt rolls the outcome model back to its pre-game state.

        Raises:
            FrozenEncoderViolation: if the encoder weights changed.
        """

        self._check_encoder()
        home_id, away_id = label.home_team_id, label.away_team_id
        home_prior = self.store.get_or_initial(home_id)
        away_prior = self.store.get_or_initial(away_id)
        home_context = label.context_for(home_id)
        away_context = label.context_for(away_id)

        home_prediction = self.outcome_model.predict(home_prior, away_prior, home_context)
        away_prediction = self.outcome_model.predict(away_prior, home_prior, away_context)

        inputs = np.stack(
            [
                self.outcome_model.build_input(home_prior, away_prior, home_context),
                self.outcome_model.build_input(away_prior, home_prior, away_context),
            ]
        )
        targets = np.asarray([label.transition_probs_home, label.transition_probs_away])
        snapshot = self.outcome_model.snapshot()
        try:
            outcome_loss = self.outcome_model.train_batch(inputs, targets)
            home_result, away_result = self._update_pair(
                label, home_prior, away_prior, home_prediction, away_prediction, now=now
            )
            self._check_encoder()
            self.store.save_many(
                {home_id: home_result.posterior, away_id: away_result.posterior},
                processed_game_id=label.game_id,
            )
        except Exception:
            self.outcome_model.restore(snapshot)
            raise
        logger.debug(
            "Processed game %s (%s vs %s), outcome loss %.4f",
            label.game_id,
            home_id,
            away_id,
            outcome_loss,
        )
        return GameUpdate(
            game_id=label.game_id,
            home=home_result,
            away=away_result,
            home_prediction=home_prediction,
            away_prediction=away_prediction,
            outcome_loss=outcome_loss,
        )

    def _update_pair(
        self,
        label: GameLabel,
        home_prior: TeamPosterior,
        away_prior: TeamPosterior,
        home_prediction: Tuple[float, ...],
        away_prediction: Tuple[float, ...],
        *,
        now: dt.datetime | None,
    ) -> Tuple[UpdateResult, UpdateResult]:
        home_id, away_id = label.home_team_id, label.away_team_id
        home_context = label.context_for(home_id)
        away_context = label.context_for(away_id)
        differential = label.point_differential
        home_won = None if not differential else differential > 0
        home_result = self.updater.update(
            home_prior,
            GameObservation(
                team_id=home_id,
                opponent_id=away_id,
                game_id=label.game_id,
                game_date=label.game_date,
                predicted=home_prediction,
                actual=label.transition_probs_home,
                context=home_context,
                won=home_won,
                point_differential=None if differential is None else float(differential),
            ),
            opponent=away_prior,
            now=now,
        )
        away_result = self.updater.update(
            away_prior,
            GameObservation(
                team_id=away_id,
                opponent_id=home_id,
                game_id=label.game_id,
                game_date=label.game_date,
                predicted=away_prediction,
                actual=label.transition_probs_away,
                context=away_context,
                won=None if home_won is None else not home_won,
                point_differential=None if differential is None else float(-differential),
            ),
            opponent=home_prior,
            now=now,
        )
        return home_result, away_result

    def _process_with_retries(
        self, label: GameLabel, *, now: dt.datetime | None
    ) -> FailedGame | None:
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.process_game(label, now=now)
            except FrozenEncoderViolation:
                raise
            except Exception as exc:
                if attempt >= self.max_attempts:
                    logger.error(
                        "Game %s failed after %d attempt(s): %s", label.game_id, attempt, exc
                    )
                    if not self.continue_on_error:
                        raise GameProcessingError(label.game_id, attempt, exc) from exc
                    return FailedGame(game_id=label.game_id, attempts=attempt, error=str(exc))
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "Game %s failed on attempt %d/%d (%s); retrying in %.1fs",
                    label.game_id,
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                self._sleep(delay)
            else:
                return None
        return None  # pragma: no cover - loop always returns

    def process_games(
        self, labels: Iterable[GameLabel], *, now: dt.datetime | None = None
    ) -> ProcessingReport:
        """Absorb games oldest first, skipping any already processed.

        Failures are retried with exponential backoff and collected in the
        returned report; the batch continues unless ``continue_on_error`` is
        disabled.  Frozen encoder violations abort the session immediately.
        """

        start = time.perf_counter()
        report = ProcessingReport()
        ordered = sorted(labels, key=lambda item: (item.game_date, item.game_id))
        seen: set[str] = set()
        for label in ordered:
            if label.processed or label.game_id in seen or self.store.is_processed(label.game_id):
                report.skipped.append(label.game_id)
                continue
            seen.add(label.game_id)
            failure = self._process_with_retries(label, now=now)
            if failure is None:
                report.processed.append(label.game_id)
            else:
                report.failed.append(failure)
        report.duration_seconds = time.perf_counter() - start
        logger.info(
            "Processing session finished: %d processed, %d skipped, %d failed in %.2fs",
            len(report.processed),
            len(report.skipped),
            len(report.failed),
            report.duration_seconds,
        )
        return report

    def initialize_team(
        self,
        team_id: str,
        feature_rows: Sequence[Sequence[float]] | np.ndarray,
        *,
        season: str | None = None,
        save: bool = True,
    ) -> TeamPosterior:
        """Seed a team's posterior from the frozen encoder's view of its games."""

        if self.encoder is None:
            raise RuntimeError("An encoder is required to initialise teams from features")
        rows = np.asarray(feature_rows, dtype=np.float64)
        if rows.ndim == 1:
            rows = rows[None, :]
        if len(rows) == 0:
            raise ValueError(f"No feature rows supplied for {team_id}")
        mu, sigma = self.encoder.encode(rows)
        low, high = self.updater.min_uncertainty, self.updater.max_uncertainty
        posterior = TeamPosterior(
            team_id=team_id,
            mu=tuple(float(value) for value in mu.mean(axis=0)),
            sigma=tuple(min(max(float(value), low), high) for value in sigma.mean(axis=0)),
            last_season=season,
        )
        if save:
            self.store.save(team_id, posterior)
        logger.info("Initialised %s from %d feature row(s)", team_id, len(rows))
        return posterior

    # -- prediction ----------------------------------------------------------

    def predict_game(
        self,
        home_team: str,
        away_team: str,
        *,
        context: GameContext | None = None,
        odds: BettingOdds | Mapping[str, Any] | None = None,
        seed: int | None = None,
    ) -> GamePrediction:
        """Simulate a matchup and screen any supplied odds.

        Teams without a usable stored posterior fall back to the default
        initialisation instead of failing the prediction.
        """

        home = self.store.get_or_initial(home_team)
        away = self.store.get_or_initial(away_team)
        home_context = context or GameContext(is_home=True)
        home_distribution, away_distribution = self.outcome_model.predict_matchup(
            home, away, home_context
        )
        simulation = self.simulator.simulate(
            home_distribution,
            away_distribution,
            home_team=home_team,
            away_team=away_team,
            seed=seed,
        )
        opportunities: List[Opportunity] = []
        if odds is not None:
            opportunities = self.ev_calculator.calculate(simulation, odds)
        return GamePrediction(
            home_team=home_team,
            away_team=away_team,
            home_posterior=home,
            away_posterior=away,
            home_distribution=home_distribution,
            away_distribution=away_distribution,
            simulation=simulation,
            opportunities=opportunities,
        )


__all__ = [
    "FailedGame",
    "GamePrediction",
    "GameUpdate",
    "OnlineLearningPipeline",
    "ProcessingReport",
]
