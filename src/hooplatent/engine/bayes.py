"""Sequential conjugate Gaussian updating of team posteriors.

Each latent dimension is treated independently.  A game produces an
observation (mean and standard deviation per dimension) which is combined
with the stored prior by precision weighting::

    post_precision = 1 / prior_sigma**2 + 1 / obs_sigma**2
    post_mu = (prior_mu / prior_sigma**2 + obs_mu / obs_sigma**2) / post_precision

The encoder plays no part here; observations come from comparing the
outcome model's prediction with what actually happened.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import logging
import math
from typing import Sequence, Tuple

from .errors import SeasonTransitionFailure
from .schemas import NUM_OUTCOMES, GameContext, TeamPosterior, utcnow
from .seasons import SeasonTransitionManager

logger = logging.getLogger(__name__)

OUTCOME_SIGNAL_WEIGHTS: Tuple[float, ...] = (1.0, -1.0, 1.5, -1.5, 1.0, -1.0, 0.5, -2.0)
PROBABILITY_FLOOR = 1e-8
MAX_CROSS_ENTROPY = -math.log(PROBABILITY_FLOOR)


def confidence_for(games_processed: int, threshold: float = 0.8, max_games: int = 20) -> float:
    """Confidence curve approaching ``threshold`` as games accumulate."""

    if games_processed <= 0:
        return 0.0
    return threshold * (1.0 - math.exp(-3.0 * games_processed / max_games))


def cross_entropy(actual: Sequence[float], predicted: Sequence[float]) -> float:
    return -math.fsum(
        a * math.log(max(p, PROBABILITY_FLOOR)) for a, p in zip(actual, predicted)
    )


def conjugate_update(
    prior_mu: Sequence[float],
    prior_sigma: Sequence[float],
    obs_mu: Sequence[float],
    obs_sigma: Sequence[float],
    *,
    min_uncertainty: float = 0.1,
) -> Tuple[Tuple[float, ...], Tuple[float, ...]]:
    """Precision-weighted combination of two diagonal Gaussians."""

    if not (len(prior_mu) == len(prior_sigma) == len(obs_mu) == len(obs_sigma)):
        raise ValueError("Prior and observation dimensions differ")
    mu: list[float] = []
    sigma: list[float] = []
    for p_mu, p_sigma, o_mu, o_sigma in zip(prior_mu, prior_sigma, obs_mu, obs_sigma):
        prior_precision = 1.0 / (p_sigma * p_sigma)
        obs_precision = 1.0 / (o_sigma * o_sigma)
        post_precision = prior_precision + obs_precision
        mu.append((p_mu * prior_precision + o_mu * obs_precision) / post_precision)
        sigma.append(max(math.sqrt(1.0 / post_precision), min_uncertainty))
    return tuple(mu), tuple(sigma)


@dataclasses.dataclass(slots=True)
class ContextMultipliers:
    neutral_site: float = 1.2
    non_conference: float = 1.1
    short_rest: float = 1.15
    short_rest_days: float = 2.0
    postseason: float = 0.9

    def factor(self, context: GameContext) -> float:
        factor = 1.0
        if context.neutral_site:
            factor *= self.neutral_site
        if not context.conference_game:
            factor *= self.non_conference
        if context.rest_days is not None and context.rest_days < self.short_rest_days:
            factor *= self.short_rest
        if context.postseason:
            factor *= self.postseason
        return factor


@dataclasses.dataclass(slots=True)
class SurprisePolicy:
    """Scale observation uncertainty by how unexpected a result was.

    Results far from what the opponent's strength implied widen the
    observation; ordinary results against well-known opponents tighten it.
    """

    expected_strength_scale: float = 0.3
    margin_scale: float = 20.0
    default_result_signal: float = 0.2
    surprise_threshold: float = 0.5
    increase_rate: float = 0.5
    decrease_rate: float = 0.3
    known_opponent_factor: float = 0.8
    unknown_opponent_factor: float = 1.2
    known_opponent_sigma_ratio: float = 0.5
    min_multiplier: float = 0.5
    max_multiplier: float = 2.0

    def surprise(
        self,
        opponent: TeamPosterior,
        *,
        won: bool | None,
        point_differential: float | None,
    ) -> float:
        expected = -opponent.strength * self.expected_strength_scale
        if point_differential is not None:
            actual = math.tanh(point_differential / self.margin_scale)
        elif won is not None:
            actual = self.default_result_signal if won else -self.default_result_signal
        else:
            actual = 0.0
        return abs(actual - expected)

    def multiplier(
        self,
        opponent: TeamPosterior | None,
        *,
        won: bool | None,
        point_differential: float | None,
        initial_uncertainty: float,
    ) -> float:
        if opponent is None:
            return 1.0
        surprise = self.surprise(opponent, won=won, point_differential=point_differential)
        if surprise > self.surprise_threshold:
            multiplier = 1.0 + self.increase_rate * surprise
        else:
            multiplier = 1.0 - self.decrease_rate * surprise
        if opponent.mean_sigma < self.known_opponent_sigma_ratio * initial_uncertainty:
            multiplier *= self.known_opponent_factor
        else:
            multiplier *= self.unknown_opponent_factor
        return min(max(multiplier, self.min_multiplier), self.max_multiplier)


@dataclasses.dataclass(slots=True)
class OpponentAdjustment:
    """Bounded direct nudge of the mean based on who the result came against."""

    enabled: bool = True
    weight: float = 0.3
    max_shift: float = 0.1
    result_bonus: float = 0.1
    margin_weight: float = 0.2
    margin_scale: float = 20.0
    expected_scale: float = 0.1

    def shift(
        self,
        opponent: TeamPosterior,
        *,
        won: bool | None,
        point_differential: float | None,
    ) -> float:
        if not self.enabled or won is None:
            return 0.0
        strength = opponent.strength
        delta = self.result_bonus if won else -self.result_bonus
        if point_differential is not None:
            delta += self.margin_weight * math.tanh(point_differential / self.margin_scale)
        delta -= -strength * self.expected_scale
        delta = min(max(delta, -1.0), 1.0)
        shift = delta * self.weight * (1.0 + 0.1 * strength)
        return min(max(shift, -self.max_shift), self.max_shift)


@dataclasses.dataclass(slots=True, frozen=True)
class GameObservation:
    """One team's view of a completed game."""

    team_id: str
    opponent_id: str
    game_id: str
    game_date: dt.date
    predicted: Tuple[float, ...]
    actual: Tuple[float, ...]
    context: GameContext = dataclasses.field(default_factory=GameContext)
    won: bool | None = None
    point_differential: float | None = None

    def __post_init__(self) -> None:
        if len(self.predicted) != NUM_OUTCOMES or len(self.actual) != NUM_OUTCOMES:
            raise ValueError(f"Outcome vectors must have {NUM_OUTCOMES} entries")


@dataclasses.dataclass(slots=True, frozen=True)
class Observation:
    mean: Tuple[float, ...]
    sigma: Tuple[float, ...]
    performance_signal: float
    prediction_error: float
    weight: float = 1.0


@dataclasses.dataclass(slots=True, frozen=True)
class UpdateResult:
    prior: TeamPosterior
    posterior: TeamPosterior
    observation: Observation
    season_transitioned: bool = False
    opponent_shift: float = 0.0


class SequentialBayesianUpdater:
    """Evolve a team's posterior one game at a time."""

    def __init__(
        self,
        *,
        initial_uncertainty: float = 1.0,
        min_uncertainty: float = 0.1,
        max_uncertainty: float = 2.0,
        uncertainty_decay: float = 0.95,
        learning_rate: float = 0.1,
        confidence_threshold: float = 0.8,
        max_games_for_convergence: int = 20,
        context_multipliers: ContextMultipliers | None = None,
        surprise_policy: SurprisePolicy | None = None,
        opponent_adjustment: OpponentAdjustment | None = None,
        season_manager: SeasonTransitionManager | None = None,
    ) -> None:
        if not 0 < min_uncertainty < max_uncertainty:
            raise ValueError("min_uncertainty must lie within (0, max_uncertainty)")
        if not min_uncertainty <= initial_uncertainty <= max_uncertainty:
            raise ValueError("initial_uncertainty must lie within [min_uncertainty, max_uncertainty]")
        if not 0 < uncertainty_decay <= 1:
            raise ValueError("uncertainty_decay must lie within (0, 1]")
        self.initial_uncertainty = initial_uncertainty
        self.min_uncertainty = min_uncertainty
        self.max_uncertainty = max_uncertainty
        self.uncertainty_decay = uncertainty_decay
        self.learning_rate = learning_rate
        self.confidence_threshold = confidence_threshold
        self.max_games_for_convergence = max_games_for_convergence
        self.context_multipliers = context_multipliers or ContextMultipliers()
        self.surprise_policy = surprise_policy or SurprisePolicy()
        self.opponent_adjustment = opponent_adjustment or OpponentAdjustment()
        self.season_manager = season_manager

    def confidence(self, games_processed: int) -> float:
        return confidence_for(
            games_processed, self.confidence_threshold, self.max_games_for_convergence
        )

    def initial_posterior(self, team_id: str, *, latent_dim: int = 16) -> TeamPosterior:
        return TeamPosterior.initial(
            team_id, latent_dim=latent_dim, initial_uncertainty=self.initial_uncertainty
        )

    def base_uncertainty(self, games_processed: int) -> float:
        decayed = self.initial_uncertainty * self.uncertainty_decay**games_processed
        return max(decayed, self.min_uncertainty)

    def observation_sigma(
        self,
        prior: TeamPosterior,
        observation: GameObservation,
        opponent: TeamPosterior | None = None,
        *,
        weight: float = 1.0,
    ) -> float:
        sigma = self.base_uncertainty(prior.games_processed)
        sigma *= self.context_multipliers.factor(observation.context)
        sigma *= self.surprise_policy.multiplier(
            opponent,
            won=observation.won,
            point_differential=observation.point_differential,
            initial_uncertainty=self.initial_uncertainty,
        )
        sigma = min(max(sigma, self.min_uncertainty), self.max_uncertainty)
        if weight <= 0:
            raise ValueError("Observation weight must be positive")
        return sigma / math.sqrt(weight) if weight < 1.0 else sigma

    def observation_mean(
        self, prior: TeamPosterior, observation: GameObservation
    ) -> Tuple[Tuple[float, ...], float, float]:
        """Return ``(mean, performance_signal, prediction_error)`` for a game."""

        difference = math.fsum(
            weight * (actual - predicted)
            for weight, actual, predicted in zip(
                OUTCOME_SIGNAL_WEIGHTS, observation.actual, observation.predicted
            )
        )
        signal = math.tanh(difference)
        error = min(1.0, cross_entropy(observation.actual, observation.predicted) / MAX_CROSS_ENTROPY)
        step = signal * (1.0 - error) * self.learning_rate
        return tuple(value + step for value in prior.mu), signal, error

    def build_observation(
        self,
        prior: TeamPosterior,
        observation: GameObservation,
        opponent: TeamPosterior | None = None,
        *,
        weight: float = 1.0,
    ) -> Observation:
        mean, signal, error = self.observation_mean(prior, observation)
        sigma = self.observation_sigma(prior, observation, opponent, weight=weight)
        return Observation(
            mean=mean,
            sigma=(sigma,) * prior.dim,
            performance_signal=signal,
            prediction_error=error,
            weight=weight,
        )

    def update(
        self,
        prior: TeamPosterior | None,
        observation: GameObservation,
        *,
        opponent: TeamPosterior | None = None,
        now: dt.datetime | None = None,
    ) -> UpdateResult:
        """Combine ``prior`` with one game and return the new posterior.

        A missing prior is initialised to ``mu = 0`` and
        ``sigma = initial_uncertainty``.  Season problems are logged and the
        season adjustment is skipped.
        """

        if prior is None:
            prior = self.initial_posterior(observation.team_id)
        elif prior.team_id != observation.team_id:
            raise ValueError(f"Observation for {observation.team_id} applied to {prior.team_id}")
        starting = prior
        weight = 1.0
        transitioned = False
        if self.season_manager is not None:
            try:
                adjustment = self.season_manager.prepare(prior, observation.game_date, now=now)
            except SeasonTransitionFailure as exc:
                logger.warning(
                    "Skipping season adjustment for %s in game %s: %s",
                    observation.team_id,
                    observation.game_id,
                    exc,
                )
            else:
                prior = adjustment.posterior
                weight = adjustment.observation_weight
                transitioned = adjustment.transitioned

        obs = self.build_observation(prior, observation, opponent, weight=weight)
        mu, sigma = conjugate_update(
            prior.mu, prior.sigma, obs.mean, obs.sigma, min_uncertainty=self.min_uncertainty
        )
        shift = 0.0
        if opponent is not None and opponent.games_processed > 0:
            shift = self.opponent_adjustment.shift(
                opponent, won=observation.won, point_differential=observation.point_differential
            )
            if shift:
                mu = tuple(value + shift for value in mu)
        games = prior.games_processed + 1
        posterior = prior.replace(
            mu=mu,
            sigma=sigma,
            games_processed=games,
            confidence=self.confidence(games),
            last_updated=now or utcnow(),
        )
        logger.debug(
            "Updated %s after %s: signal %.3f error %.3f obs sigma %.3f shift %.3f",
            observation.team_id,
            observation.game_id,
            obs.performance_signal,
            obs.prediction_error,
            obs.sigma[0],
            shift,
        )
        return UpdateResult(
            prior=starting,
            posterior=posterior,
            observation=obs,
            season_transitioned=transitioned,
            opponent_shift=shift,
        )


__all__ = [
    "ContextMultipliers",
    "GameObservation",
    "Observation",
    "OpponentAdjustment",
    "SequentialBayesianUpdater",
    "SurprisePolicy",
    "UpdateResult",
    "confidence_for",
    "conjugate_update",
    "cross_entropy",
]
