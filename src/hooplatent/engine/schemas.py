"""Core data model for team posteriors, game labels and persisted records."""

from __future__ import annotations

import dataclasses
import datetime as dt
import json
import math
import statistics
from typing import Any, Callable, Iterable, Literal, Mapping, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import InvalidPosteriorFormat

OUTCOME_CLASSES: Tuple[str, ...] = (
    "two_point_make",
    "two_point_miss",
    "three_point_make",
    "three_point_miss",
    "free_throw_make",
    "free_throw_miss",
    "offensive_rebound",
    "turnover",
)
NUM_OUTCOMES = len(OUTCOME_CLASSES)
POINTS_BY_OUTCOME: Tuple[int, ...] = (2, 0, 3, 0, 1, 0, 0, 0)
OFFENSIVE_REBOUND_INDEX = OUTCOME_CLASSES.index("offensive_rebound")

FEATURE_DIM = 80
LATENT_DIM = 16
CONTEXT_DIM = 10
LABEL_TOLERANCE = 1e-6

POSTERIOR_TYPE = "bayesian_posterior"
POSTERIOR_MODEL_VERSION = "v1.0"


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def coerce_datetime(value: object) -> dt.datetime:
    """Coerce ISO strings, dates and naive datetimes into aware UTC datetimes."""

    if isinstance(value, dt.datetime):
        parsed = value
    elif isinstance(value, dt.date):
        parsed = dt.datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = dt.datetime.fromisoformat(text)
    else:
        raise TypeError(f"Cannot interpret {value!r} as a timestamp")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def coerce_date(value: object) -> dt.date:
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if isinstance(value, str):
        return coerce_datetime(value).date()
    raise TypeError(f"Cannot interpret {value!r} as a date")


# ---------------------------------------------------------------------------
# Outcome label helpers
# ---------------------------------------------------------------------------


def normalize_outcome_vector(
    values: Iterable[float], *, tolerance: float = 1e-3
) -> Tuple[float, ...]:
    """Validate an 8-way outcome distribution and renormalise it exactly.

    Vectors whose sum is further than ``tolerance`` from one are rejected
    rather than silently rescaled.
    """

    vector = [float(value) for value in values]
    if len(vector) != NUM_OUTCOMES:
        raise ValueError(f"Outcome vector must have {NUM_OUTCOMES} entries, got {len(vector)}")
    if any(not math.isfinite(value) for value in vector):
        raise ValueError("Outcome vector contains non-finite values")
    if any(value < 0.0 for value in vector):
        raise ValueError("Outcome vector contains negative probabilities")
    total = math.fsum(vector)
    if total <= 0.0 or abs(total - 1.0) > tolerance:
        raise ValueError(f"Outcome vector must sum to 1, got {total:.6f}")
    return tuple(value / total for value in vector)


def outcome_vector_from_counts(counts: Sequence[float] | Mapping[str, float]) -> Tuple[float, ...]:
    """Turn per-class possession counts into a normalised outcome distribution."""

    if isinstance(counts, Mapping):
        unknown = set(counts) - set(OUTCOME_CLASSES)
        if unknown:
            raise ValueError(f"Unknown outcome classes: {sorted(unknown)}")
        raw = [float(counts.get(name, 0.0)) for name in OUTCOME_CLASSES]
    else:
        raw = [float(value) for value in counts]
    if len(raw) != NUM_OUTCOMES:
        raise ValueError(f"Expected {NUM_OUTCOMES} outcome counts, got {len(raw)}")
    if any(value < 0.0 or not math.isfinite(value) for value in raw):
        raise ValueError("Outcome counts must be finite and non-negative")
    total = math.fsum(raw)
    if total == 0.0:
        return tuple(1.0 / NUM_OUTCOMES for _ in raw)
    return tuple(value / total for value in raw)


# ---------------------------------------------------------------------------
# Posterior model
# ---------------------------------------------------------------------------


@dataclasses.dataclass(slots=True, frozen=True)
class SeasonTransitionRecord:
    from_season: str | None
    to_season: str
    transition_date: dt.datetime
    variance_added: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_season": self.from_season,
            "to_season": self.to_season,
            "transition_date": self.transition_date.isoformat(),
            "variance_added": self.variance_added,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SeasonTransitionRecord":
        return cls(
            from_season=payload.get("from_season"),
            to_season=str(payload["to_season"]),
            transition_date=coerce_datetime(payload["transition_date"]),
            variance_added=float(payload["variance_added"]),
        )


@dataclasses.dataclass(slots=True, frozen=True)
class TeamPosterior:
    """Per-dimension Gaussian belief about a team's latent representation.

    Instances are immutable; updates produce a new posterior that supersedes
    the stored one.
    """

    team_id: str
    mu: Tuple[float, ...]
    sigma: Tuple[float, ...]
    games_processed: int = 0
    confidence: float = 0.0
    last_season: str | None = None
    last_updated: dt.datetime = dataclasses.field(default_factory=utcnow)
    transition_history: Tuple[SeasonTransitionRecord, ...] = ()

    def __post_init__(self) -> None:
        mu = tuple(float(value) for value in self.mu)
        sigma = tuple(float(value) for value in self.sigma)
        if not mu or len(mu) != len(sigma):
            raise ValueError(
                f"Posterior for {self.team_id} has mismatched dimensions {len(mu)}/{len(sigma)}"
            )
        if any(not math.isfinite(value) for value in mu):
            raise ValueError(f"Posterior mean for {self.team_id} contains non-finite values")
        if any(not math.isfinite(value) or value <= 0.0 for value in sigma):
            raise ValueError(f"Posterior sigma for {self.team_id} must be finite and positive")
        if self.games_processed < 0:
            raise ValueError("games_processed must be non-negative")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError("confidence must lie within [0, 1]")
        object.__setattr__(self, "mu", mu)
        object.__setattr__(self, "sigma", sigma)
        object.__setattr__(self, "last_updated", coerce_datetime(self.last_updated))
        object.__setattr__(self, "transition_history", tuple(self.transition_history))

    @classmethod
    def initial(
        cls,
        team_id: str,
        *,
        latent_dim: int = LATENT_DIM,
        initial_uncertainty: float = 1.0,
        season: str | None = None,
        now: dt.datetime | None = None,
    ) -> "TeamPosterior":
        return cls(
            team_id=team_id,
            mu=(0.0,) * latent_dim,
            sigma=(initial_uncertainty,) * latent_dim,
            last_season=season,
            last_updated=now or utcnow(),
        )

    @property
    def dim(self) -> int:
        return len(self.mu)

    @property
    def variance(self) -> Tuple[float, ...]:
        return tuple(value * value for value in self.sigma)

    @property
    def precision(self) -> Tuple[float, ...]:
        return tuple(1.0 / (value * value) for value in self.sigma)

    @property
    def strength(self) -> float:
        """Scalar summary of the team used by opponent-strength heuristics."""
        return statistics.fmean(self.mu)

    @property
    def mean_sigma(self) -> float:
        return statistics.fmean(self.sigma)

    def replace(self, **changes: Any) -> "TeamPosterior":
        return dataclasses.replace(self, **changes)

    def to_representation(self) -> dict[str, Any]:
        """Serialise into the versioned JSON persistence shape."""
        return posterior_to_record(self).model_dump(mode="json")


# ---------------------------------------------------------------------------
# Game inputs
# ---------------------------------------------------------------------------


@dataclasses.dataclass(slots=True, frozen=True)
class GameContext:
    """Situational features for one team's perspective of a game."""

    is_home: bool = True
    neutral_site: bool = False
    conference_game: bool = True
    postseason: bool = False
    rest_days: float | None = None
    season_progress: float | None = None
    temperature: float | None = None
    altitude: float | None = None
    crowd_size: float | None = None
    tv_game: bool = False

    def to_vector(self) -> list[float]:
        rest = 2.0 if self.rest_days is None else float(self.rest_days)
        progress = 0.5 if self.season_progress is None else float(self.season_progress)
        temperature = 70.0 if self.temperature is None else float(self.temperature)
        altitude = 0.0 if self.altitude is None else float(self.altitude)
        crowd = 10_000.0 if self.crowd_size is None else float(self.crowd_size)
        return [
            float(self.is_home),
            float(self.neutral_site),
            float(self.conference_game),
            float(self.postseason),
            rest / 7.0,
            min(max(progress, 0.0), 1.0),
            temperature / 100.0,
            altitude / 10_000.0,
            crowd / 20_000.0,
            float(self.tv_game),
        ]

    def for_away(self) -> "GameContext":
        return dataclasses.replace(self, is_home=False)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any] | None) -> "GameContext":
        if not payload:
            return cls()
        names = {field.name for field in dataclasses.fields(cls)}
        return cls(**{key: value for key, value in payload.items() if key in names and value is not None})


@dataclasses.dataclass(slots=True, frozen=True)
class GameLabel:
    """Observed possession-outcome distributions for both teams in a game."""

    game_id: str
    home_team_id: str
    away_team_id: str
    transition_probs_home: Tuple[float, ...]
    transition_probs_away: Tuple[float, ...]
    game_date: dt.date
    processed: bool = False
    home_score: int | None = None
    away_score: int | None = None
    context: GameContext = dataclasses.field(default_factory=GameContext)
    home_rest_days: float | None = None
    away_rest_days: float | None = None

    def __post_init__(self) -> None:
        if self.home_team_id == self.away_team_id:
            raise ValueError(f"Game {self.game_id} lists the same team on both sides")
        object.__setattr__(
            self, "transition_probs_home", normalize_outcome_vector(self.transition_probs_home)
        )
        object.__setattr__(
            self, "transition_probs_away", normalize_outcome_vector(self.transition_probs_away)
        )
        object.__setattr__(self, "game_date", coerce_date(self.game_date))

    @property
    def point_differential(self) -> int | None:
        """Home score minus away score, if the final score is known."""
        if self.home_score is None or self.away_score is None:
            return None
        return int(self.home_score) - int(self.away_score)

    def context_for(self, team_id: str) -> GameContext:
        if team_id == self.home_team_id:
            return dataclasses.replace(self.context, is_home=True, rest_days=self.home_rest_days)
        if team_id == self.away_team_id:
            return dataclasses.replace(self.context, is_home=False, rest_days=self.away_rest_days)
        raise KeyError(f"Team {team_id} did not play in game {self.game_id}")

    def mark_processed(self) -> "GameLabel":
        if self.processed:
            return self
        return dataclasses.replace(self, processed=True)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "GameLabel":
        context_keys = {field.name for field in dataclasses.fields(GameContext)} - {"is_home", "rest_days"}
        context = GameContext.from_mapping(
            {key: payload[key] for key in context_keys if key in payload}
        )
        home_score = payload.get("home_score")
        away_score = payload.get("away_score")
        return cls(
            game_id=str(payload["game_id"]),
            home_team_id=str(payload["home_team_id"]),
            away_team_id=str(payload["away_team_id"]),
            transition_probs_home=tuple(payload["transition_probs_home"]),
            transition_probs_away=tuple(payload["transition_probs_away"]),
            game_date=payload["game_date"],
            processed=bool(payload.get("processed") or False),
            home_score=None if home_score is None else int(home_score),
            away_score=None if away_score is None else int(away_score),
            context=context,
            home_rest_days=payload.get("home_rest_days"),
            away_rest_days=payload.get("away_rest_days"),
        )


@dataclasses.dataclass(slots=True, frozen=True)
class EncoderWeights:
    """Metadata for a set of encoder parameters."""

    version: str
    frozen: bool
    created_at: dt.datetime = dataclasses.field(default_factory=utcnow)
    weights_hash: str | None = None


# ---------------------------------------------------------------------------
# Versioned persistence schema
# ---------------------------------------------------------------------------


def _check_vectors(mu: Sequence[float], sigma: Sequence[float], *, allow_zero_sigma: bool) -> None:
    if not mu or len(mu) != len(sigma):
        raise ValueError("mu and sigma must be non-empty and of equal length")
    if any(not math.isfinite(value) for value in mu):
        raise ValueError("mu contains non-finite values")
    for value in sigma:
        if not math.isfinite(value) or value < 0.0 or (value == 0.0 and not allow_zero_sigma):
            raise ValueError("sigma must be finite and positive")


class BayesianPosteriorV1(BaseModel):
    """Current persisted posterior representation."""

    model_config = ConfigDict(extra="ignore")

    type: Literal["bayesian_posterior"] = POSTERIOR_TYPE
    model_version: Literal["v1.0"] = POSTERIOR_MODEL_VERSION
    mu: list[float]
    sigma: list[float]
    games_processed: int = Field(default=0, ge=0)
    last_season: str | None = None
    last_updated: dt.datetime | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    season_transition_history: list[dict[str, Any]] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_vectors(self) -> "BayesianPosteriorV1":
        _check_vectors(self.mu, self.sigma, allow_zero_sigma=False)
        return self


class LegacyPosteriorFormat(BaseModel):
    """Untagged records written before posteriors were versioned."""

    model_config = ConfigDict(extra="ignore")

    mu: list[float]
    sigma: list[float]
    games_processed: int = Field(default=0, ge=0)
    last_season: str | None = None
    last_updated: dt.datetime | None = None

    @model_validator(mode="after")
    def _validate_vectors(self) -> "LegacyPosteriorFormat":
        _check_vectors(self.mu, self.sigma, allow_zero_sigma=True)
        return self


PosteriorRecord = BayesianPosteriorV1 | LegacyPosteriorFormat


def parse_posterior_record(payload: Mapping[str, Any] | str | bytes) -> PosteriorRecord:
    """Parse a stored representation into one of the known schema versions.

    Raises:
        InvalidPosteriorFormat: if the payload matches no known version.
    """

    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise InvalidPosteriorFormat(f"Posterior is not valid JSON: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise InvalidPosteriorFormat(f"Posterior must be a mapping, got {type(payload).__name__}")
    tag = payload.get("type")
    try:
        if tag is None:
            return LegacyPosteriorFormat.model_validate(payload)
        if tag == POSTERIOR_TYPE:
            return BayesianPosteriorV1.model_validate(payload)
    except ValidationError as exc:
        raise InvalidPosteriorFormat(f"Posterior failed validation: {exc.error_count()} error(s)") from exc
    raise InvalidPosteriorFormat(f"Unknown posterior type tag: {tag!r}")


def migrate_posterior(
    record: PosteriorRecord,
    *,
    team_id: str,
    latent_dim: int = LATENT_DIM,
    min_uncertainty: float = 0.1,
    max_uncertainty: float = 2.0,
    confidence_fn: Callable[[int], float] | None = None,
    now: dt.datetime | None = None,
) -> TeamPosterior:
    """Bring any supported record version up to a :class:`TeamPosterior`.

    Sigma values outside the configured bounds are clamped back into range.
    Dimension mismatches cannot be repaired and raise
    :class:`InvalidPosteriorFormat`.
    """

    if len(record.mu) != latent_dim:
        raise InvalidPosteriorFormat(
            f"Posterior has {len(record.mu)} dimensions, expected {latent_dim}", team_id=team_id
        )
    sigma = tuple(min(max(value, min_uncertainty), max_uncertainty) for value in record.sigma)
    games = record.games_processed
    if isinstance(record, BayesianPosteriorV1):
        confidence = record.confidence
        try:
            history = tuple(
                SeasonTransitionRecord.from_dict(entry) for entry in record.season_transition_history
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidPosteriorFormat(
                f"Malformed season transition history: {exc}", team_id=team_id
            ) from exc
    else:
        confidence = confidence_fn(games) if confidence_fn is not None else 0.0
        history = ()
    return TeamPosterior(
        team_id=team_id,
        mu=tuple(record.mu),
        sigma=sigma,
        games_processed=games,
        confidence=confidence,
        last_season=record.last_season,
        last_updated=record.last_updated or now or utcnow(),
        transition_history=history,
    )


def posterior_to_record(posterior: TeamPosterior) -> BayesianPosteriorV1:
    return BayesianPosteriorV1(
        mu=list(posterior.mu),
        sigma=list(posterior.sigma),
        games_processed=posterior.games_processed,
        last_season=posterior.last_season,
        last_updated=posterior.last_updated,
        confidence=posterior.confidence,
        season_transition_history=[entry.to_dict() for entry in posterior.transition_history],
    )


__all__ = [
    "BayesianPosteriorV1",
    "CONTEXT_DIM",
    "EncoderWeights",
    "FEATURE_DIM",
    "GameContext",
    "GameLabel",
    "LATENT_DIM",
    "LegacyPosteriorFormat",
    "NUM_OUTCOMES",
    "OUTCOME_CLASSES",
    "POINTS_BY_OUTCOME",
    "PosteriorRecord",
    "SeasonTransitionRecord",
    "TeamPosterior",
    "migrate_posterior",
    "normalize_outcome_vector",
    "outcome_vector_from_counts",
    "parse_posterior_record",
    "posterior_to_record",
]
